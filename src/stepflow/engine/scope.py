"""Variable scope store.

Variables written by ``Assign`` clauses live here. A scope is the only
channel between states besides input/output chaining. Children created for
Parallel branches and Map items get a deep copy, so nothing written in a
child is visible to its siblings or to the parent after the join.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any


class VariableNotFoundError(KeyError):
    """Raised when reading a variable that was never assigned."""

    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        super().__init__(name)

    def __str__(self) -> str:
        known = ", ".join(sorted(self.available)) or "none"
        return f"Variable '{self.name}' is not defined (assigned variables: {known})"


class VariableScope:
    """Named variables of one execution context."""

    def __init__(self, variables: Mapping[str, Any] | None = None):
        self._variables: dict[str, Any] = copy.deepcopy(dict(variables or {}))

    def fork(self) -> VariableScope:
        """Deep copy for a child context."""
        return VariableScope(self._variables)

    def assign(self, name: str, value: Any) -> None:
        self._variables[name] = copy.deepcopy(value)

    def assign_all(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self.assign(name, value)

    def get(self, name: str) -> Any:
        """Return a variable's value.

        Raises:
            VariableNotFoundError: If the variable was never assigned
        """
        try:
            return self._variables[name]
        except KeyError:
            raise VariableNotFoundError(name, list(self._variables)) from None

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only view handed to the expression evaluator."""
        return MappingProxyType(self._variables)

    def names(self) -> list[str]:
        return list(self._variables)

    def __contains__(self, name: object) -> bool:
        return name in self._variables

    def __iter__(self) -> Iterator[str]:
        return iter(self._variables)

    def __len__(self) -> int:
        return len(self._variables)

    def __repr__(self) -> str:
        return f"VariableScope({sorted(self._variables)})"


__all__ = ["VariableNotFoundError", "VariableScope"]
