"""
Workflow runner (execution driver).

Walks a state graph from ``StartAt``: runs the current state through the
StateExecutor, feeds its output to the next state as input, and stops on
``End: true``, Succeed or Fail. Parallel branches and Map items re-enter the
same walk through ``run_graph`` with their own child contexts.

Every run returns an ExecutionResult. Only DefinitionError escapes
``execute``: an invalid document never starts a run.

Design Principles:
- Stateless between executions (safe to share across concurrent runs)
- Configuration is explicit (EngineConfig), never read from globals
- Overall deadline around the root walk; cancellation reaches every child
- The trace survives failures for debugging
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
import string
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from .config import EngineConfig
from .coordinator import Coordinator
from .exceptions import ExecutionTimeout, StepflowError
from .execution_context import ExecutionContext
from .execution_result import ExecutionResult
from .expressions import ExpressionEvaluator
from .items import ItemsSource
from .retry import SleepFunc
from .schema import StateGraph, WorkflowDefinition
from .secrets import SecretRedactor
from .state_executor import StateExecutor
from .task_client import TaskInvocationClient
from .trace import ExecutionTrace, TraceEventKind, utcnow

logger = logging.getLogger(__name__)

_JOB_ID_ALPHABET = string.ascii_letters + string.digits
_random = random.SystemRandom()


def new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex[:12]}"


def new_job_id(length: int = 12) -> str:
    """Random alphanumeric job id."""
    return "".join(_random.choice(_JOB_ID_ALPHABET) for _ in range(length))


class WorkflowRunner:
    """
    Executes workflow definitions.

    Usage:
        runner = WorkflowRunner(LocalTaskClient({...}))
        result = await runner.execute(definition, {"jobId": "abc"})
        response = result.to_response()

    Args:
        task_client: Transport for Task states
        items_sources: Map ItemsSource instances by name
        config: Engine settings (defaults when omitted)
        evaluator: Shared expression evaluator
        secret_redactor: Applied to trace payloads and responses
        sleep: Retry backoff sleep, replaceable in tests
        uniform: Jitter source, replaceable in tests
    """

    def __init__(
        self,
        task_client: TaskInvocationClient,
        *,
        items_sources: Mapping[str, ItemsSource] | None = None,
        config: EngineConfig | None = None,
        evaluator: ExpressionEvaluator | None = None,
        secret_redactor: SecretRedactor | None = None,
        sleep: SleepFunc = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ):
        self.task_client = task_client
        self.config = config or EngineConfig()
        self.evaluator = evaluator or ExpressionEvaluator()
        self.secret_redactor = secret_redactor
        self.coordinator = Coordinator(self.run_graph, self.evaluator, self.config, items_sources)
        self.executor = StateExecutor(
            task_client,
            self.evaluator,
            self.config,
            self.coordinator,
            sleep=sleep,
            uniform=uniform,
        )

    def prepare_input(self, input: Any) -> tuple[Any, str]:
        """
        Assign the execution id of a new run.

        With ``job_id_key`` configured and an object input, a random job id is
        injected under that key (a caller-supplied value is kept) and used as
        the execution id. Otherwise a fresh ``exec_`` id is generated.

        Returns:
            (input, execution_id)
        """
        key = self.config.job_id_key
        if key is None or not isinstance(input, dict):
            return input, new_execution_id()

        if not input.get(key):
            input = {**input, key: new_job_id(self.config.job_id_length)}
        return input, str(input[key])

    async def execute(
        self,
        definition: WorkflowDefinition | dict[str, Any],
        input: Any = None,
        *,
        execution_id: str | None = None,
        timeout: float | None = None,
        trace: ExecutionTrace | None = None,
    ) -> ExecutionResult:
        """
        Run a workflow to completion.

        Args:
            definition: Validated definition, or a raw document to validate
            input: Execution input (deep-copied, never mutated)
            execution_id: Id of this run (generated when omitted)
            timeout: Deadline in seconds, overriding the definition and config
            trace: Trace to record into (a new one when omitted)

        Returns:
            ExecutionResult with output, or error and cause

        Raises:
            DefinitionError: If a raw document fails validation
        """
        if not isinstance(definition, WorkflowDefinition):
            definition = WorkflowDefinition.from_dict(definition)

        input = {} if input is None else copy.deepcopy(input)
        if execution_id is None:
            input, execution_id = self.prepare_input(input)

        trace = trace or ExecutionTrace(execution_id, self.secret_redactor)
        deadline = timeout or definition.timeout_seconds or self.config.execution_timeout
        ctx = ExecutionContext(input, execution_id, trace)

        started = utcnow()
        trace.record(TraceEventKind.EXECUTION_STARTED, input=input, started_at=started)
        logger.info(
            f"Execution {execution_id} of '{definition.name}' started (deadline {deadline:g}s)"
        )

        deadline_scope = asyncio.timeout(deadline)
        try:
            async with deadline_scope:
                output = await self.run_graph(definition, ctx)
        except TimeoutError as e:
            if deadline_scope.expired():
                timeout_error = ExecutionTimeout(deadline, execution_id)
                return self._failed(definition, ctx, timeout_error, started)
            # raised by a task client or items source, not by the deadline
            logger.exception(f"Execution {execution_id} of '{definition.name}' crashed: {e}")
            return self._failed(definition, ctx, e, started)
        except StepflowError as e:
            return self._failed(definition, ctx, e, started)
        except Exception as e:
            logger.exception(f"Execution {execution_id} of '{definition.name}' crashed: {e}")
            return self._failed(definition, ctx, e, started)

        trace.record(TraceEventKind.EXECUTION_SUCCEEDED, output=output, started_at=started)
        logger.info(f"Execution {execution_id} of '{definition.name}' succeeded")
        return ExecutionResult.success(
            execution_id,
            definition.name,
            output,
            trace,
            started_at=started.isoformat(),
            finished_at=utcnow().isoformat(),
            secret_redactor=self.secret_redactor,
        )

    async def run_graph(self, graph: StateGraph, ctx: ExecutionContext) -> Any:
        """
        Walk ``graph`` from its StartAt state until a terminal state.

        Returns:
            Output of the terminal state

        Raises:
            ClassifiedError: Unrecovered state failure
            ExpressionError: Data selection failed
        """
        current = graph.start_at
        while True:
            state = graph.states[current]
            transition = await self.executor.run(current, state, ctx)
            ctx.input = transition.output
            if transition.is_terminal:
                return transition.output
            logger.debug(f"[{ctx.execution_id}] {ctx.path}{current} -> {transition.next_state}")
            current = transition.next_state

    def _failed(
        self,
        definition: WorkflowDefinition,
        ctx: ExecutionContext,
        exc: BaseException,
        started: datetime,
    ) -> ExecutionResult:
        result = ExecutionResult.failure(
            ctx.execution_id,
            definition.name,
            exc,
            ctx.trace,
            started_at=started.isoformat(),
            finished_at=utcnow().isoformat(),
            secret_redactor=self.secret_redactor,
        )
        ctx.trace.record(
            TraceEventKind.EXECUTION_FAILED,
            error=result.error,
            cause=result.cause,
            started_at=started,
        )
        logger.info(
            f"Execution {ctx.execution_id} of '{definition.name}' failed: "
            f"{result.error}: {result.cause}"
        )
        return result


__all__ = ["WorkflowRunner", "new_execution_id", "new_job_id"]
