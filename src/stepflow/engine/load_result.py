"""Result type for definition loading.

Loading many documents (a template directory, several search paths) must not
stop at the first broken file, so the loader and registry report outcomes as
values. Executing a workflow never uses this type: execution outcomes are
ExecutionResult, and single-document parsing raises DefinitionError.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar

from .exceptions import DefinitionError

T = TypeVar("T")


class LoadStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class LoadResult(Generic[T]):  # noqa: UP046
    """
    Outcome of a load or validation operation.

    Attributes:
        status: SUCCESS or FAILED
        value: Loaded value (SUCCESS only)
        error: Summary message (FAILED only)
        source: File path or "<string>" the result refers to
        details: One line per validation problem
    """

    status: LoadStatus
    value: T | None = None
    error: str | None = None
    source: str = "<string>"
    details: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.status == LoadStatus.SUCCESS and self.value is None:
            raise ValueError("Success result must have a value")
        if self.status == LoadStatus.FAILED and not self.error:
            raise ValueError("Failed result must have an error message")

    @property
    def is_success(self) -> bool:
        return self.status == LoadStatus.SUCCESS

    @classmethod
    def success(cls, value: T, source: str = "<string>") -> "LoadResult[T]":
        return cls(status=LoadStatus.SUCCESS, value=value, source=source)

    @classmethod
    def failure(
        cls, error: str, source: str = "<string>", details: list[str] | None = None
    ) -> "LoadResult[T]":
        return cls(status=LoadStatus.FAILED, error=error, source=source, details=details or [])

    @classmethod
    def from_error(cls, exc: DefinitionError) -> "LoadResult[T]":
        return cls.failure(str(exc), source=exc.source, details=exc.details)

    def __bool__(self) -> bool:
        return self.is_success

    def unwrap(self) -> T:
        """Return the value.

        Raises:
            DefinitionError: If the load failed
        """
        if not self.is_success or self.value is None:
            raise DefinitionError(self.error or "load failed", self.source, self.details)
        return self.value


__all__ = ["LoadResult", "LoadStatus"]
