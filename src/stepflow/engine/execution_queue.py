"""Execution queue for asynchronous workflow runs.

``submit`` validates the request, persists a ``queued`` record and returns
the execution id immediately; a pool of worker coroutines runs the queued
executions. Each execution runs in its own task, so cancelling one never
takes down the worker that picked it up.

Status lifecycle:
    queued -> running -> succeeded | failed | timed_out | cancelled
    queued -> cancelled
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .config import MAX_EXECUTION_TIMEOUT
from .execution_store import ExecutionStore
from .registry import WorkflowRegistry
from .schema import WorkflowDefinition
from .workflow_runner import WorkflowRunner

logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (ExecutionStatus.QUEUED, ExecutionStatus.RUNNING)


class ExecutionRecord(BaseModel):
    """Persisted state of one asynchronous execution."""

    id: str = Field(description="Execution id")
    workflow: str = Field(description="Workflow name")
    input: Any = Field(default=None, description="Execution input (after job id injection)")
    status: ExecutionStatus = Field(default=ExecutionStatus.QUEUED)
    timeout: float = Field(description="Execution deadline in seconds")
    trace_header: str | None = Field(default=None, description="Caller-supplied trace header")
    output: Any = None
    error: str | None = None
    cause: str | None = None
    trace: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=datetime.now)


_STAT_FOR_STATUS = {
    ExecutionStatus.SUCCEEDED: "succeeded_executions",
    ExecutionStatus.FAILED: "failed_executions",
    ExecutionStatus.TIMED_OUT: "timed_out_executions",
    ExecutionStatus.CANCELLED: "cancelled_executions",
}


class ExecutionQueue:
    """
    Asynchronous execution queue with a worker pool.

    Usage:
        queue = ExecutionQueue(runner, registry, num_workers=3)
        await queue.start()
        execution_id = await queue.submit("video-deliver", {"deliveryWorkflow": "..."})
        status = await queue.get_status(execution_id)
        await queue.stop()
    """

    def __init__(
        self,
        runner: WorkflowRunner,
        registry: WorkflowRegistry | None = None,
        num_workers: int = 3,
        *,
        store: ExecutionStore | None = None,
        max_pending: int = 500,
        max_history: int = 1000,
    ):
        self._runner = runner
        self._registry = registry
        self._num_workers = num_workers
        self._store = store or ExecutionStore()
        self._max_pending = max_pending
        self._max_history = max_history
        self._queue: asyncio.Queue[tuple[ExecutionRecord, WorkflowDefinition]] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._cancelled: set[str] = set()
        self._cleanup_lock = asyncio.Lock()
        self._running = False

    @property
    def store(self) -> ExecutionStore:
        return self._store

    async def start(self) -> None:
        """Initialize storage, mark stale runs as failed and start the workers."""
        if self._running:
            logger.warning("ExecutionQueue already running")
            return

        await self._store.init()
        await self._cleanup_stale()

        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(worker_id=i)) for i in range(self._num_workers)
        ]
        stats = await self._store.get_stats()
        logger.info(
            f"ExecutionQueue started with {self._num_workers} workers. "
            f"Stats: {stats['total_executions']} total, "
            f"{stats['succeeded_executions']} succeeded, {stats['failed_executions']} failed"
        )

    async def stop(self, wait_for_completion: bool = True) -> None:
        """
        Stop the worker pool.

        Args:
            wait_for_completion: Let queued and running executions finish first;
                otherwise running executions are cancelled
        """
        if not self._running:
            return
        self._running = False

        if wait_for_completion:
            await self._queue.join()

        for task in list(self._tasks.values()):
            task.cancel()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._tasks.values(), *self._workers, return_exceptions=True)
        self._workers = []
        logger.info("ExecutionQueue stopped")

    def _resolve(self, workflow: WorkflowDefinition | dict[str, Any] | str) -> WorkflowDefinition:
        if isinstance(workflow, WorkflowDefinition):
            return workflow
        if isinstance(workflow, str):
            if self._registry is None:
                raise KeyError(f"Workflow not found: {workflow} (no registry configured)")
            return self._registry.get(workflow)
        return WorkflowDefinition.from_dict(workflow)

    async def submit(
        self,
        workflow: WorkflowDefinition | dict[str, Any] | str,
        input: Any = None,
        *,
        timeout: float | None = None,
        trace_header: str | None = None,
    ) -> str:
        """
        Queue a workflow for asynchronous execution.

        Args:
            workflow: Definition, raw document, or registered workflow name
            input: Execution input
            timeout: Deadline in seconds (default: definition, then engine setting)
            trace_header: Opaque caller trace header, stored with the record

        Returns:
            Execution id

        Raises:
            RuntimeError: Queue not started or at capacity
            ValueError: Timeout not positive or above 86400 seconds
            KeyError: Unknown workflow name
            DefinitionError: Invalid raw document
        """
        if not self._running:
            raise RuntimeError("ExecutionQueue not started. Call start() first.")

        if timeout is not None and not 0 < timeout <= MAX_EXECUTION_TIMEOUT:
            raise ValueError(
                f"Timeout must be positive and at most {MAX_EXECUTION_TIMEOUT} seconds, "
                f"got {timeout}"
            )

        pending = self._queue.qsize() + len(self._tasks)
        if pending >= self._max_pending:
            raise RuntimeError(
                f"Execution queue at capacity: {pending}/{self._max_pending} pending executions"
            )

        definition = self._resolve(workflow)
        prepared, execution_id = self._runner.prepare_input({} if input is None else input)
        record = ExecutionRecord(
            id=execution_id,
            workflow=definition.name,
            input=prepared,
            timeout=timeout
            or definition.timeout_seconds
            or self._runner.config.execution_timeout,
            trace_header=trace_header,
        )

        await self._store.save(record)
        await self._store.increment_stat("total_executions")
        self._done[execution_id] = asyncio.Event()
        await self._queue.put((record, definition))
        logger.info(
            f"Execution submitted: {execution_id} (workflow={definition.name}, "
            f"timeout={record.timeout:g}s)"
        )

        stats = await self._store.get_stats()
        if stats["total_executions"] % 10 == 0:
            asyncio.create_task(self._cleanup_history())

        return execution_id

    async def get_status(self, execution_id: str) -> dict[str, Any]:
        """
        Status of an execution, without its trace.

        Returns:
            {"id", "workflow", "status", "output", "error", "cause", "timeout",
             "trace_header", "created_at", "started_at", "completed_at", "result_file"}

        Raises:
            KeyError: Unknown execution id
        """
        data = await self._store.load(execution_id)
        return {
            "id": data["id"],
            "workflow": data["workflow"],
            "status": data["status"],
            "output": data.get("output"),
            "error": data.get("error"),
            "cause": data.get("cause"),
            "timeout": data.get("timeout"),
            "trace_header": data.get("trace_header"),
            "created_at": data["created_at"],
            "started_at": data.get("started_at"),
            "completed_at": data.get("completed_at"),
            "result_file": str(self._store.record_path(execution_id)),
        }

    async def wait(self, execution_id: str, timeout: float | None = None) -> dict[str, Any]:
        """Wait until an execution submitted to this queue has finished, then return its status."""
        event = self._done.get(execution_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        return await self.get_status(execution_id)

    async def cancel(self, execution_id: str) -> bool:
        """
        Cancel a queued or running execution.

        Returns:
            True if cancelled, False if it had already finished

        Raises:
            KeyError: Unknown execution id
        """
        data = await self._store.load(execution_id)
        if ExecutionStatus(data["status"]).is_terminal:
            return False

        task = self._tasks.get(execution_id)
        if task is not None and not task.done():
            # The execution task persists the cancelled state itself
            task.cancel()
            await asyncio.wait([task])
            logger.info(f"Cancelled running execution: {execution_id}")
            return True

        self._cancelled.add(execution_id)
        record = ExecutionRecord(**data)
        await self._finish(record, ExecutionStatus.CANCELLED)
        logger.info(f"Execution cancelled before start: {execution_id}")
        return True

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        return await self._store.list_executions(status=status, workflow=workflow, limit=limit)

    async def get_stats(self) -> dict[str, int]:
        return {
            **await self._store.get_stats(),
            "queue_size": self._queue.qsize(),
            "running": len(self._tasks),
            "active_workers": len([w for w in self._workers if not w.done()]),
        }

    async def _finish(self, record: ExecutionRecord, status: ExecutionStatus) -> None:
        record.status = status
        record.completed_at = datetime.now()
        await self._store.save(record)
        await self._store.increment_stat(_STAT_FOR_STATUS[status])
        event = self._done.get(record.id)
        if event is not None:
            event.set()

    async def _execute(self, record: ExecutionRecord, definition: WorkflowDefinition) -> None:
        record.status = ExecutionStatus.RUNNING
        record.started_at = datetime.now()
        await self._store.save(record)

        try:
            result = await self._runner.execute(
                definition, record.input, execution_id=record.id, timeout=record.timeout
            )
            data = result.to_dict()
        except asyncio.CancelledError:
            record.error = "Cancelled"
            record.cause = "Execution was cancelled"
            await asyncio.shield(self._finish(record, ExecutionStatus.CANCELLED))
            raise
        except Exception as e:
            # Execution failed outside the state machine - persist failure
            record.error = type(e).__name__
            record.cause = str(e)
            await self._finish(record, ExecutionStatus.FAILED)
            logger.error(f"Execution {record.id} failed unexpectedly: {e}", exc_info=True)
            return

        record.output = data["output"]
        record.error = data["error"]
        record.cause = data["cause"]
        record.trace = data["trace"]
        if result.succeeded:
            status = ExecutionStatus.SUCCEEDED
        elif result.error == "ExecutionTimeout":
            status = ExecutionStatus.TIMED_OUT
        else:
            status = ExecutionStatus.FAILED
        await self._finish(record, status)
        logger.info(f"Execution {record.id} finished: {status.value}")

    async def _worker(self, worker_id: int) -> None:
        logger.info(f"ExecutionQueue worker {worker_id} started")
        while True:
            record, definition = await self._queue.get()
            try:
                if record.id in self._cancelled:
                    self._cancelled.discard(record.id)
                    continue

                logger.info(
                    f"Worker {worker_id} executing {record.id} (workflow={record.workflow})"
                )
                task = asyncio.create_task(self._execute(record, definition))
                self._tasks[record.id] = task
                try:
                    await asyncio.wait([task])
                finally:
                    self._tasks.pop(record.id, None)
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        f"Execution {record.id} could not be recorded: {task.exception()!r}"
                    )
            finally:
                self._queue.task_done()

    async def _cleanup_stale(self) -> None:
        """Mark ``running`` records left behind by a crashed process as failed."""
        for execution_id in await self._store.get_stale():
            record = ExecutionRecord(**await self._store.load(execution_id))
            record.error = "Stale"
            record.cause = "Execution was interrupted (server restart or crash)"
            await self._finish(record, ExecutionStatus.FAILED)
            logger.warning(f"Marked stale execution as failed: {execution_id}")

    async def _cleanup_history(self) -> None:
        async with self._cleanup_lock:
            to_delete = await self._store.get_oldest(keep=self._max_history)
            for execution_id in to_delete:
                await self._store.delete(execution_id)
                self._done.pop(execution_id, None)
            if to_delete:
                logger.info(f"Execution history cleanup: removed {len(to_delete)} record(s)")


__all__ = ["ExecutionQueue", "ExecutionRecord", "ExecutionStatus"]
