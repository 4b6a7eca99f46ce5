"""
Execution trace.

An append-only, ordered log of what a run did: every task attempt, every
state outcome, and the final execution outcome. Parallel branches and Map
items append concurrently (sync task handlers may even run in threads), so
appends are serialized by a lock and numbered with a sequence.

Payloads pass through the SecretRedactor (when one is configured) before
they are stored or handed to listeners.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .secrets import SecretRedactor

logger = logging.getLogger(__name__)


class TraceEventKind(str, Enum):
    EXECUTION_STARTED = "ExecutionStarted"
    EXECUTION_SUCCEEDED = "ExecutionSucceeded"
    EXECUTION_FAILED = "ExecutionFailed"
    TASK_ATTEMPT = "TaskAttempt"
    STATE_SUCCEEDED = "StateSucceeded"
    STATE_FAILED = "StateFailed"
    STATE_CAUGHT = "StateCaught"


class TraceEvent(BaseModel):
    """
    One trace entry.

    ``path`` locates the state inside nested graphs, e.g. ``Map[1]/MakeDmq``
    is the ``MakeDmq`` state of the second Map item.
    """

    sequence: int = Field(ge=0, description="Position in the trace")
    kind: TraceEventKind
    execution_id: str
    state_name: str | None = None
    path: str = ""
    attempt: int = Field(default=1, ge=1)
    input: Any = None
    output: Any = None
    error: str | None = None
    cause: str | None = None
    started_at: str = Field(description="ISO 8601 timestamp when the step started")
    finished_at: str = Field(description="ISO 8601 timestamp when the step finished")
    duration_ms: int = Field(default=0, ge=0)

    @property
    def failed(self) -> bool:
        return self.error is not None


TraceListener = Callable[[TraceEvent], None]


def utcnow() -> datetime:
    return datetime.now(UTC)


class ExecutionTrace:
    """
    Thread-safe append-only trace of one execution.

    Example:
        trace = ExecutionTrace("exec-1")
        started = utcnow()
        trace.record(TraceEventKind.STATE_SUCCEEDED, state_name="Copy in",
                     input={...}, output={...}, started_at=started)
        [e.state_name for e in trace.events]
    """

    def __init__(
        self,
        execution_id: str,
        redactor: SecretRedactor | None = None,
        listeners: list[TraceListener] | None = None,
    ):
        self.execution_id = execution_id
        self.redactor = redactor
        self._listeners = list(listeners or [])
        self._events: list[TraceEvent] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: TraceListener) -> None:
        self._listeners.append(listener)

    def record(
        self,
        kind: TraceEventKind,
        *,
        started_at: datetime,
        state_name: str | None = None,
        path: str = "",
        attempt: int = 1,
        input: Any = None,
        output: Any = None,
        error: str | None = None,
        cause: str | None = None,
    ) -> TraceEvent:
        """Append an event that started at ``started_at`` and finishes now."""
        finished_at = utcnow()
        if self.redactor is not None:
            input = self.redactor.redact(input)
            output = self.redactor.redact(output)
            cause = self.redactor.redact(cause)

        with self._lock:
            event = TraceEvent(
                sequence=len(self._events),
                kind=kind,
                execution_id=self.execution_id,
                state_name=state_name,
                path=path,
                attempt=attempt,
                input=input,
                output=output,
                error=error,
                cause=cause,
                started_at=started_at.isoformat(),
                finished_at=finished_at.isoformat(),
                duration_ms=max(0, int((finished_at - started_at).total_seconds() * 1000)),
            )
            self._events.append(event)
            for listener in self._listeners:
                listener(event)

        logger.debug(
            f"[{self.execution_id}] {kind.value} {path}{state_name or ''} attempt={attempt}"
            + (f" error={error}" if error else "")
        )
        return event

    @property
    def events(self) -> list[TraceEvent]:
        """Snapshot of the events recorded so far."""
        with self._lock:
            return list(self._events)

    def for_state(self, state_name: str, kind: TraceEventKind | None = None) -> list[TraceEvent]:
        return [
            e
            for e in self.events
            if e.state_name == state_name and (kind is None or e.kind == kind)
        ]

    def to_list(self) -> list[dict[str, Any]]:
        return [event.model_dump(mode="json") for event in self.events]

    def __iter__(self) -> Iterator[TraceEvent]:
        return iter(self.events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


__all__ = ["ExecutionTrace", "TraceEvent", "TraceEventKind", "TraceListener", "utcnow"]
