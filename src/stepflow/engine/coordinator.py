"""
Parallel/Map coordinator.

Fans a state out into concurrent child runs and joins them back:

- Parallel: one child per branch, all with the state's input
- Map: one child per item, at most ``MaxConcurrency`` at a time

Children get a forked context (deep-copied input and scope), so nothing a
child assigns is visible to its siblings or to the parent. Outputs are
joined in declaration/item order regardless of completion order.

Failure policy:
    run-to-completion (default)  siblings keep running; the join fails once
                                 every child has settled
    fail-fast                    remaining siblings are cancelled as soon as
                                 one child fails

Either way no Map item starts after the first failure, and when several
children fail the one with the lowest index decides the error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from functools import partial
from typing import Any

from .config import EngineConfig
from .exceptions import ClassifiedError, ErrorClass, ExpressionError
from .execution_context import ExecutionContext
from .expressions import ExpressionEvaluator
from .items import ItemsSource
from .schema import MapState, ParallelState, StateGraph

logger = logging.getLogger(__name__)

GraphRunner = Callable[[StateGraph, ExecutionContext], Awaitable[Any]]

_SKIPPED: Any = object()


class Coordinator:
    """
    Runs Parallel branches and Map items.

    Args:
        run_graph: Walks a sub-graph to completion and returns its output
        evaluator: Resolves ``Items`` and ``ItemReader.Arguments``
        config: Default fail-fast policy and Map concurrency cap
        items_sources: ItemsSource instances by ``ItemReader.Source`` name
    """

    def __init__(
        self,
        run_graph: GraphRunner,
        evaluator: ExpressionEvaluator,
        config: EngineConfig | None = None,
        items_sources: Mapping[str, ItemsSource] | None = None,
    ):
        self.run_graph = run_graph
        self.evaluator = evaluator
        self.config = config or EngineConfig()
        self.items_sources: dict[str, ItemsSource] = dict(items_sources or {})

    def register_items_source(self, name: str, source: ItemsSource) -> None:
        if name in self.items_sources:
            raise ValueError(f"Items source '{name}' is already registered")
        self.items_sources[name] = source

    def _fail_fast(self, state: ParallelState | MapState) -> bool:
        if state.fail_fast is not None:
            return state.fail_fast
        return self.config.parallel_fail_fast

    async def run_parallel(
        self, name: str, state: ParallelState, ctx: ExecutionContext
    ) -> list[Any]:
        """Run every branch concurrently; outputs in branch order."""
        children = [
            (branch, ctx.fork(ctx.input, f"{name}[{index}]"))
            for index, branch in enumerate(state.branches)
        ]
        logger.debug(f"[{ctx.execution_id}] Parallel '{name}' starting {len(children)} branch(es)")
        return await self._join(
            name,
            [partial(self.run_graph, branch, child) for branch, child in children],
            fail_fast=self._fail_fast(state),
            limit=0,
        )

    async def run_map(self, name: str, state: MapState, ctx: ExecutionContext) -> list[Any]:
        """Run the item processor once per item; outputs in item order."""
        items = await self.resolve_items(name, state, ctx)
        limit = state.max_concurrency or self.config.max_concurrency
        logger.debug(
            f"[{ctx.execution_id}] Map '{name}' over {len(items)} item(s) "
            f"(MaxConcurrency={limit or 'unbounded'})"
        )
        if not items:
            return []

        processor = state.item_processor
        return await self._join(
            name,
            [
                partial(self._run_item, processor, ctx, f"{name}[{index}]", item)
                for index, item in enumerate(items)
            ],
            fail_fast=self._fail_fast(state),
            limit=limit,
        )

    async def _run_item(
        self, processor: StateGraph, ctx: ExecutionContext, label: str, item: Any
    ) -> Any:
        return await self.run_graph(processor, ctx.fork(item, label))

    async def resolve_items(self, name: str, state: MapState, ctx: ExecutionContext) -> list[Any]:
        """
        Items of a Map state, from ``Items`` or from its ``ItemReader`` source.

        Raises:
            ExpressionError: ``Items`` does not evaluate to a list
            ClassifiedError: ResourceNotFound for an unregistered source
        """
        scope = ctx.scope.snapshot()
        states_context = ctx.states_context(name)

        if state.item_reader is None:
            items = self.evaluator.evaluate(state.items, ctx.input, scope, context=states_context)
            if not isinstance(items, list):
                raise ExpressionError(
                    str(state.items), f"Items must evaluate to a list, got {type(items).__name__}"
                )
            return items

        reader = state.item_reader
        source = self.items_sources.get(reader.source)
        if source is None:
            raise ClassifiedError(
                ErrorClass.RESOURCE_NOT_FOUND,
                f"Items source '{reader.source}' is not registered. "
                f"Available: {sorted(self.items_sources)}",
            )
        query: Any = {}
        if reader.arguments is not None:
            query = self.evaluator.evaluate(
                reader.arguments, ctx.input, scope, context=states_context
            )
        return [item async for item in source.list(query)]

    async def _join(
        self,
        name: str,
        factories: list[Callable[[], Awaitable[Any]]],
        *,
        fail_fast: bool,
        limit: int,
    ) -> list[Any]:
        semaphore = asyncio.Semaphore(limit) if limit > 0 else None
        failed = asyncio.Event()

        async def run_child(factory: Callable[[], Awaitable[Any]]) -> Any:
            if semaphore is None:
                return await guarded(factory)
            async with semaphore:
                # No new children once a sibling has failed
                if failed.is_set():
                    return _SKIPPED
                return await guarded(factory)

        async def guarded(factory: Callable[[], Awaitable[Any]]) -> Any:
            try:
                return await factory()
            except Exception:
                failed.set()
                raise

        tasks = [asyncio.create_task(run_child(factory)) for factory in factories]
        try:
            if fail_fast:
                await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            else:
                await asyncio.wait(tasks)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for index, task in enumerate(tasks):
            if task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                logger.info(f"'{name}' failed in child {index}: {error!r}")
                raise error

        return [task.result() for task in tasks]


__all__ = ["Coordinator", "GraphRunner"]
