"""
State executor.

Runs one state of a graph against an execution context and returns the
transition the driver should follow. Dispatch is a closed table keyed by
the state model class, so an unknown state type is a programming error and
never silently ignored.

Per-state behavior:

    Task      evaluate Arguments, invoke Resource under Retry, shape Output
    Choice    first truthy Condition wins, else Default
    Pass      Output (default: input)
    Parallel  branches via the Coordinator, whole state under Retry
    Map       item processor via the Coordinator, whole state under Retry
    Fail      raise ClassifiedError(Error, Cause)
    Succeed   terminal, Output (default: input)

``Assign`` values are evaluated against the scope as it was before the
state ran and applied only once the state has completed. Unrecovered
ClassifiedErrors of Task/Parallel/Map are offered to ``Catch`` in order.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .config import EngineConfig
from .exceptions import ClassifiedError, ExpressionError
from .execution_context import ExecutionContext
from .expressions import ExpressionEvaluator
from .retry import SleepFunc, run_with_retry
from .schema import (
    ChoiceState,
    FailState,
    MapState,
    ParallelState,
    PassState,
    SucceedState,
    TaskState,
)
from .task_client import TaskInvocationClient
from .trace import TraceEventKind, utcnow

if TYPE_CHECKING:
    from .coordinator import Coordinator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """Where the driver goes next and what it carries there.

    ``next_state`` is None for terminal states. ``caught`` is set when the
    state failed and a Catch rule recovered it.
    """

    next_state: str | None
    output: Any
    caught: ClassifiedError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.next_state is None


StateHandler = Callable[[str, Any, ExecutionContext], Awaitable[Transition]]


class StateExecutor:
    """
    Executes single states.

    Args:
        task_client: Transport used by Task states
        evaluator: Expression evaluator shared by every state
        config: Engine settings (default task timeout)
        coordinator: Runs Parallel/Map states (required for graphs using them)
        sleep: Retry backoff sleep, replaceable in tests
        uniform: Jitter source, replaceable in tests
    """

    def __init__(
        self,
        task_client: TaskInvocationClient,
        evaluator: ExpressionEvaluator,
        config: EngineConfig | None = None,
        coordinator: Coordinator | None = None,
        *,
        sleep: SleepFunc = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ):
        self.task_client = task_client
        self.evaluator = evaluator
        self.config = config or EngineConfig()
        self.coordinator = coordinator
        self._sleep = sleep
        self._uniform = uniform
        self._handlers: dict[type, StateHandler] = {
            TaskState: self._run_task,
            ChoiceState: self._run_choice,
            PassState: self._run_pass,
            ParallelState: self._run_parallel,
            MapState: self._run_map,
            FailState: self._run_fail,
            SucceedState: self._run_succeed,
        }

    async def run(self, name: str, state: Any, ctx: ExecutionContext) -> Transition:
        """
        Run one state and record its outcome in the trace.

        Raises:
            ClassifiedError: Unrecovered state failure (after Retry and Catch)
            ExpressionError: Data selection failed (fatal)
        """
        handler = self._handlers.get(type(state))
        if handler is None:
            raise TypeError(f"No handler for state type {type(state).__name__}")

        started = utcnow()
        logger.debug(f"[{ctx.execution_id}] Entering {ctx.path}{name} ({state.type})")
        try:
            transition = await handler(name, state, ctx)
        except (ClassifiedError, ExpressionError) as e:
            error = e.error if isinstance(e, ClassifiedError) else type(e).__name__
            cause = e.cause if isinstance(e, ClassifiedError) else str(e)
            ctx.trace.record(
                TraceEventKind.STATE_FAILED,
                state_name=name,
                path=ctx.path,
                input=ctx.input,
                error=error,
                cause=cause,
                started_at=started,
            )
            raise

        if transition.caught is not None:
            ctx.trace.record(
                TraceEventKind.STATE_CAUGHT,
                state_name=name,
                path=ctx.path,
                input=ctx.input,
                output=transition.output,
                error=transition.caught.error,
                cause=transition.caught.cause,
                started_at=started,
            )
        else:
            ctx.trace.record(
                TraceEventKind.STATE_SUCCEEDED,
                state_name=name,
                path=ctx.path,
                input=ctx.input,
                output=transition.output,
                started_at=started,
            )
        return transition

    # Evaluation helpers

    def _evaluate(
        self,
        template: Any,
        name: str,
        ctx: ExecutionContext,
        scope: Mapping[str, Any],
        **bindings: Any,
    ) -> Any:
        return self.evaluator.evaluate(
            template, ctx.input, scope, context=ctx.states_context(name), **bindings
        )

    def _complete(
        self,
        name: str,
        state: Any,
        ctx: ExecutionContext,
        scope: Mapping[str, Any],
        next_state: str | None,
        default_output: Any,
        **bindings: Any,
    ) -> Transition:
        """Shape the output, apply Assign and build the transition."""
        if state.has_output:
            output = self._evaluate(state.output, name, ctx, scope, **bindings)
        else:
            output = default_output

        if state.assign:
            ctx.scope.assign_all(self._evaluate(state.assign, name, ctx, scope, **bindings))

        return Transition(next_state, output)

    def _recover(
        self,
        name: str,
        state: TaskState | ParallelState | MapState,
        ctx: ExecutionContext,
        scope: Mapping[str, Any],
        error: ClassifiedError,
    ) -> Transition:
        """Route an unrecovered error through the first matching Catch rule."""
        for index, rule in enumerate(state.catch):
            if not error.matches(rule.error_equals):
                continue

            error_output = error.to_error_output()
            if rule.has_output:
                output = self._evaluate(rule.output, name, ctx, scope, error_output=error_output)
            else:
                output = error_output
            if rule.assign:
                ctx.scope.assign_all(
                    self._evaluate(rule.assign, name, ctx, scope, error_output=error_output)
                )

            logger.info(
                f"[{ctx.execution_id}] State '{ctx.path}{name}' caught {error.error} "
                f"(Catch[{index}]), continuing at '{rule.next}'"
            )
            return Transition(rule.next, output, caught=error)

        raise error

    def _snapshot(self, ctx: ExecutionContext) -> dict[str, Any]:
        # Pre-state scope; Assign never sees values written by the same state
        return copy.deepcopy(dict(ctx.scope.snapshot()))

    # State handlers

    async def _run_task(self, name: str, state: TaskState, ctx: ExecutionContext) -> Transition:
        scope = self._snapshot(ctx)
        if state.has_arguments:
            payload = self._evaluate(state.arguments, name, ctx, scope)
        else:
            payload = ctx.input
        timeout = state.timeout_seconds or self.config.task_timeout

        async def attempt(number: int) -> Any:
            started: datetime = utcnow()
            try:
                result = await self.task_client.invoke(state.resource, payload, timeout)
            except ClassifiedError as e:
                ctx.trace.record(
                    TraceEventKind.TASK_ATTEMPT,
                    state_name=name,
                    path=ctx.path,
                    attempt=number,
                    input=payload,
                    error=e.error,
                    cause=e.cause,
                    started_at=started,
                )
                raise
            ctx.trace.record(
                TraceEventKind.TASK_ATTEMPT,
                state_name=name,
                path=ctx.path,
                attempt=number,
                input=payload,
                output=result,
                started_at=started,
            )
            return result

        try:
            result = await run_with_retry(
                state.retry, attempt, sleep=self._sleep, uniform=self._uniform
            )
        except ClassifiedError as e:
            return self._recover(name, state, ctx, scope, e)

        return self._complete(name, state, ctx, scope, state.next, result, result=result)

    async def _run_choice(
        self, name: str, state: ChoiceState, ctx: ExecutionContext
    ) -> Transition:
        scope = self._snapshot(ctx)
        states_context = ctx.states_context(name)

        target = state.default
        rule_assign = None
        for index, rule in enumerate(state.choices):
            if self.evaluator.evaluate_condition(
                rule.condition, ctx.input, scope, context=states_context
            ):
                logger.debug(f"[{ctx.execution_id}] Choice '{name}' matched Choices[{index}]")
                target = rule.next
                rule_assign = rule.assign
                break
        else:
            logger.debug(f"[{ctx.execution_id}] Choice '{name}' fell through to Default")

        transition = self._complete(name, state, ctx, scope, target, ctx.input)
        if rule_assign:
            ctx.scope.assign_all(self._evaluate(rule_assign, name, ctx, scope))
        return transition

    async def _run_pass(self, name: str, state: PassState, ctx: ExecutionContext) -> Transition:
        scope = self._snapshot(ctx)
        return self._complete(name, state, ctx, scope, state.next, ctx.input)

    async def _run_parallel(
        self, name: str, state: ParallelState, ctx: ExecutionContext
    ) -> Transition:
        coordinator = self._require_coordinator(name)
        scope = self._snapshot(ctx)

        async def attempt(number: int) -> list[Any]:
            return await coordinator.run_parallel(name, state, ctx)

        try:
            result = await run_with_retry(
                state.retry, attempt, sleep=self._sleep, uniform=self._uniform
            )
        except ClassifiedError as e:
            return self._recover(name, state, ctx, scope, e)

        return self._complete(name, state, ctx, scope, state.next, result, result=result)

    async def _run_map(self, name: str, state: MapState, ctx: ExecutionContext) -> Transition:
        coordinator = self._require_coordinator(name)
        scope = self._snapshot(ctx)

        async def attempt(number: int) -> list[Any]:
            return await coordinator.run_map(name, state, ctx)

        try:
            result = await run_with_retry(
                state.retry, attempt, sleep=self._sleep, uniform=self._uniform
            )
        except ClassifiedError as e:
            return self._recover(name, state, ctx, scope, e)

        return self._complete(name, state, ctx, scope, state.next, result, result=result)

    async def _run_fail(self, name: str, state: FailState, ctx: ExecutionContext) -> Transition:
        scope = self._snapshot(ctx)
        error = self._evaluate(state.error, name, ctx, scope)
        cause = self._evaluate(state.cause, name, ctx, scope)
        raise ClassifiedError(_as_text(error), _as_text(cause))

    async def _run_succeed(
        self, name: str, state: SucceedState, ctx: ExecutionContext
    ) -> Transition:
        scope = self._snapshot(ctx)
        if state.has_output:
            return Transition(None, self._evaluate(state.output, name, ctx, scope))
        return Transition(None, ctx.input)

    def _require_coordinator(self, name: str) -> Coordinator:
        if self.coordinator is None:
            raise RuntimeError(f"State '{name}' needs a Coordinator, none was configured")
        return self.coordinator


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


__all__ = ["StateExecutor", "Transition"]
