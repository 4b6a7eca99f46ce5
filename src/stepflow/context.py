"""Shared context types for the MCP server.

Kept separate from ``server`` and ``tools`` to avoid circular imports.
"""

from dataclasses import dataclass
from typing import Any

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession

from .engine import (
    EngineConfig,
    ExecutionQueue,
    ExecutionResult,
    TaskInvocationClient,
    WorkflowDefinition,
    WorkflowRegistry,
    WorkflowRunner,
)
from .engine.secrets import SecretProvider, SecretRedactor


@dataclass
class AppContext:
    """Shared resources created at server startup and injected into every tool."""

    registry: WorkflowRegistry
    runner: WorkflowRunner
    task_client: TaskInvocationClient
    config: EngineConfig
    secret_provider: SecretProvider | None = None
    secret_redactor: SecretRedactor | None = None
    execution_queue: ExecutionQueue | None = None  # None disables async mode

    def resolve(self, workflow: str | dict[str, Any] | WorkflowDefinition) -> WorkflowDefinition:
        """
        Definition for a registered name or an inline document.

        Raises:
            KeyError: Unknown workflow name
            DefinitionError: Invalid inline document
        """
        if isinstance(workflow, WorkflowDefinition):
            return workflow
        if isinstance(workflow, str):
            return self.registry.get(workflow)
        return WorkflowDefinition.from_dict(workflow, source="<inline-workflow>")

    async def start_sync_execution(
        self,
        workflow: str | dict[str, Any] | WorkflowDefinition,
        input: Any = None,
        timeout: float | None = None,
        trace_header: str | None = None,
    ) -> ExecutionResult:
        """Run a workflow and wait for its result."""
        definition = self.resolve(workflow)
        result = await self.runner.execute(definition, input, timeout=timeout)
        result.trace_header = trace_header
        return result

    async def start_execution(
        self,
        workflow: str | dict[str, Any] | WorkflowDefinition,
        input: Any = None,
        timeout: float | None = None,
        trace_header: str | None = None,
    ) -> str:
        """
        Queue a workflow and return its execution id immediately.

        Raises:
            RuntimeError: Asynchronous execution disabled, or queue at capacity
        """
        if self.execution_queue is None:
            raise RuntimeError("Asynchronous execution is not enabled")
        definition = self.resolve(workflow)
        return await self.execution_queue.submit(
            definition, input, timeout=timeout, trace_header=trace_header
        )


AppContextType = Context[ServerSession, AppContext]


__all__ = ["AppContext", "AppContextType"]
