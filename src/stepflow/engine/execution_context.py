"""
Execution context for state graphs.

One context exists per graph walk: the root run, every Parallel branch and
every Map item. A context owns its input and its variable scope; the
execution trace and identifiers are shared down the hierarchy.
"""

from __future__ import annotations

import copy
from typing import Any

from .scope import VariableScope
from .trace import ExecutionTrace


class ExecutionContext:
    """
    Input/scope pair flowing through one run or sub-run.

    Design:
    - ``input`` is the input of the state about to run; the driver replaces
      it with each state's output
    - ``scope`` is owned by this context; children get a deep copy
    - ``path`` labels the nesting position for the trace (``Map[1]/``)
    """

    def __init__(
        self,
        input: Any,
        execution_id: str,
        trace: ExecutionTrace,
        scope: VariableScope | None = None,
        parent: ExecutionContext | None = None,
        path: str = "",
        execution_input: Any = None,
    ):
        self.input = input
        self.execution_id = execution_id
        self.trace = trace
        self.scope = scope if scope is not None else VariableScope()
        self.parent = parent
        self.path = path
        # Original input of the whole execution, exposed as states.context.Execution.Input
        self.execution_input = copy.deepcopy(input) if parent is None else execution_input

    @property
    def depth(self) -> int:
        depth = 0
        node = self.parent
        while node is not None:
            depth += 1
            node = node.parent
        return depth

    def fork(self, input: Any, label: str) -> ExecutionContext:
        """
        Create the child context of a Parallel branch or Map item.

        Args:
            input: Child input (deep-copied)
            label: Position label, e.g. ``Copy out[3]``

        Returns:
            Context with a forked scope, sharing trace and execution id
        """
        return ExecutionContext(
            input=copy.deepcopy(input),
            execution_id=self.execution_id,
            trace=self.trace,
            scope=self.scope.fork(),
            parent=self,
            path=f"{self.path}{label}/",
            execution_input=self.execution_input,
        )

    def states_context(self, state_name: str) -> dict[str, Any]:
        """Value bound to ``states.context`` while ``state_name`` runs."""
        return {
            "Execution": {"Id": self.execution_id, "Input": self.execution_input},
            "State": {"Name": state_name},
        }

    def __repr__(self) -> str:
        return (
            f"ExecutionContext(execution_id={self.execution_id!r}, path={self.path!r}, "
            f"scope={self.scope!r})"
        )


__all__ = ["ExecutionContext"]
