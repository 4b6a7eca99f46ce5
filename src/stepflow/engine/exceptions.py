"""Error taxonomy for workflow execution.

Four families of failure exist, and only the first one takes part in
Retry/Catch handling:

- ClassifiedError: raised by task invocations and Fail states. Carries a
  stable error class used for ``ErrorEquals`` matching.
- ExpressionError: bad data selection. Always fatal to the run.
- DefinitionError: invalid definition document. Raised before a run starts.
- ExecutionTimeout: the overall execution deadline was exceeded.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorClass(str, Enum):
    """Well-known error class names.

    Definitions and task implementations may use any other string as well;
    these are the classes the bundled task clients produce.
    """

    THROTTLING = "ThrottlingError"
    TRANSIENT = "TransientServiceError"
    INVALID_INPUT = "InvalidInput"
    UNKNOWN = "Unknown"
    TIMEOUT = "States.Timeout"
    RESOURCE_NOT_FOUND = "ResourceNotFound"
    ALL = "States.ALL"


WILDCARD = ErrorClass.ALL.value


class StepflowError(Exception):
    """Base class for every engine error."""


class ClassifiedError(StepflowError):
    """
    Error tagged with a stable class for Retry/Catch matching.

    Attributes:
        error: Error class name (e.g. "ThrottlingError" or a Fail state's Error)
        cause: Human-readable detail, surfaced to callers as ``cause``
    """

    def __init__(self, error: str | ErrorClass, cause: str = ""):
        self.error = error.value if isinstance(error, ErrorClass) else str(error)
        self.cause = cause
        super().__init__(f"{self.error}: {cause}" if cause else self.error)

    def matches(self, matchers: list[str]) -> bool:
        """True when any matcher names this error's class or is the wildcard."""
        return any(m == WILDCARD or m == self.error for m in matchers)

    def to_error_output(self) -> dict[str, str]:
        """Payload exposed to Catch rules as ``states.errorOutput``."""
        return {"Error": self.error, "Cause": self.cause}

    def __repr__(self) -> str:
        return f"ClassifiedError(error={self.error!r}, cause={self.cause!r})"


class ExpressionError(StepflowError):
    """
    An expression could not be evaluated.

    Raised for unresolvable references, type mismatches (arithmetic on an
    undefined value, comparing a string with a number) and expressions that
    resolve to undefined where a value is required. Never retried or caught.

    Attributes:
        expression: Expression source text (without the ``{{ }}`` markers)
        reason: What went wrong
    """

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Failed to evaluate expression '{expression}': {reason}")

    def __repr__(self) -> str:
        return f"ExpressionError(expression={self.expression!r}, reason={self.reason!r})"


class DefinitionError(StepflowError):
    """
    A workflow definition document is invalid.

    Attributes:
        source: Where the document came from (file path or "<string>")
        details: Individual validation messages
    """

    def __init__(self, message: str, source: str = "<string>", details: list[str] | None = None):
        self.source = source
        self.details = details or []
        text = f"Invalid workflow definition ({source}): {message}"
        if self.details:
            text += "\n" + "\n".join(f"  - {d}" for d in self.details)
        super().__init__(text)

    def __repr__(self) -> str:
        return f"DefinitionError(source={self.source!r}, details={len(self.details)})"


class ExecutionTimeout(StepflowError):
    """
    The overall execution deadline was exceeded.

    Attributes:
        timeout: Deadline in seconds
        execution_id: Run that was aborted, when known
    """

    def __init__(self, timeout: float, execution_id: str | None = None):
        self.timeout = timeout
        self.execution_id = execution_id
        super().__init__(f"Execution exceeded its deadline of {timeout:g} seconds")

    def __repr__(self) -> str:
        return f"ExecutionTimeout(timeout={self.timeout!r}, execution_id={self.execution_id!r})"


def error_fields(exc: BaseException) -> dict[str, Any]:
    """Map an engine exception to the ``{error, cause}`` pair reported to callers."""
    if isinstance(exc, ClassifiedError):
        return {"error": exc.error, "cause": exc.cause}
    return {"error": type(exc).__name__, "cause": str(exc)}


__all__ = [
    "ClassifiedError",
    "DefinitionError",
    "ErrorClass",
    "ExecutionTimeout",
    "ExpressionError",
    "StepflowError",
    "WILDCARD",
    "error_fields",
]
