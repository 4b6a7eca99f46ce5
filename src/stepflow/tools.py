"""MCP tool implementations for workflow execution.

Following the MCP Python SDK patterns:
- Tool functions decorated with @mcp.tool()
- Flat parameter signatures with Annotated types for validation
- Async functions for all tools
- Docstrings become tool descriptions
"""

import json
from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field

from .context import AppContextType
from .engine import ExecutionStatus, load_definition_from_yaml
from .engine.schema import TERMINAL_TYPES, ChoiceState, TaskState
from .formatting import (
    format_execution_list_markdown,
    format_workflow_info_markdown,
    format_workflow_list_markdown,
    format_workflow_not_found_error,
)
from .server import mcp

# =============================================================================
# Execution Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Start Execution",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=True,  # Task states call external compute
    )
)
async def start_execution(
    workflow: Annotated[
        str,
        Field(
            description="Workflow name (use list_workflows() to discover)",
            min_length=1,
            max_length=200,
        ),
    ],
    input: Annotated[  # noqa: A002
        dict[str, Any] | None,
        Field(description="Execution input, available as states.input"),
    ] = None,
    mode: Annotated[
        Literal["sync", "async"],
        Field(description="sync=wait for result, async=return execution_id"),
    ] = "sync",
    timeout: Annotated[
        int | None,
        Field(description="Execution deadline in seconds", ge=1, le=86400),
    ] = None,
    trace_header: Annotated[
        str | None,
        Field(description="Caller trace header recorded with the execution", max_length=500),
    ] = None,
    debug: Annotated[
        bool,
        Field(description="Write the execution trace to /tmp/<workflow>-<timestamp>.json"),
    ] = False,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Start a workflow execution. Required: workflow. Optional: input, mode, timeout."""
    app_ctx = ctx.request_context.lifespan_context

    if workflow not in app_ctx.registry:
        available = app_ctx.registry.list_names()
        return {
            "status": "failure",
            "error": (
                f"Workflow '{workflow}' not found. "
                f"Available workflows: {', '.join(available[:5])}"
                f"{' (and more)' if len(available) > 5 else ''}. "
                "Use list_workflows() to see all workflows or filter by tags."
            ),
            "available_workflows": available,
        }

    if mode == "async":
        try:
            execution_id = await app_ctx.start_execution(
                workflow, input, timeout=timeout, trace_header=trace_header
            )
        except (RuntimeError, ValueError) as e:
            return {"status": "failure", "error": str(e)}
        return {
            "execution_id": execution_id,
            "workflow": workflow,
            "status": ExecutionStatus.QUEUED.value,
            "message": "Execution queued. Use get_execution_status() to check progress.",
        }

    result = await app_ctx.start_sync_execution(
        workflow, input, timeout=timeout, trace_header=trace_header
    )
    return result.to_response(debug)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Execute Inline Workflow",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=True,
    )
)
async def execute_inline_workflow(
    definition_yaml: Annotated[
        str,
        Field(
            description="Complete workflow definition (YAML or JSON) with Name, StartAt, States",
            min_length=10,
            max_length=100000,
        ),
    ],
    input: Annotated[  # noqa: A002
        dict[str, Any] | None,
        Field(description="Execution input, available as states.input"),
    ] = None,
    debug: Annotated[
        bool,
        Field(description="Write the execution trace to /tmp/<workflow>-<timestamp>.json"),
    ] = False,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Run an inline workflow definition synchronously. Required: definition_yaml."""
    app_ctx = ctx.request_context.lifespan_context

    load_result = load_definition_from_yaml(definition_yaml, source="<inline-workflow>")
    if not load_result.is_success or load_result.value is None:
        return {
            "status": "failure",
            "error": f"Invalid workflow definition: {load_result.error}",
            "details": load_result.details,
        }

    result = await app_ctx.start_sync_execution(load_result.value, input)
    return result.to_response(debug)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Execution Status",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_execution_status(
    execution_id: Annotated[str, Field(min_length=1, max_length=100)],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Get status and output of an asynchronous execution. Required: execution_id."""
    app_ctx = ctx.request_context.lifespan_context
    if not app_ctx.execution_queue:
        return {
            "error": "Execution queue not available",
            "message": "Asynchronous execution is not enabled",
        }

    try:
        return await app_ctx.execution_queue.get_status(execution_id)
    except (KeyError, FileNotFoundError):
        return {
            "error": "Execution not found",
            "execution_id": execution_id,
            "message": f"No execution found with ID: {execution_id}",
        }


@mcp.tool(
    annotations=ToolAnnotations(
        title="Cancel Execution",
        readOnlyHint=False,
        destructiveHint=True,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def cancel_execution(
    execution_id: Annotated[str, Field(min_length=1, max_length=100)],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Cancel a queued or running execution. Required: execution_id."""
    app_ctx = ctx.request_context.lifespan_context
    if not app_ctx.execution_queue:
        return {
            "error": "Execution queue not available",
            "message": "Asynchronous execution is not enabled",
        }

    try:
        cancelled = await app_ctx.execution_queue.cancel(execution_id)
    except (KeyError, FileNotFoundError):
        return {
            "error": "Execution not found",
            "execution_id": execution_id,
            "message": f"No execution found with ID: {execution_id}",
        }
    return {
        "execution_id": execution_id,
        "cancelled": cancelled,
        "message": "Execution cancelled" if cancelled else "Execution already finished",
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Executions",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_executions(
    status: Annotated[
        str | None,
        Field(description="Filter by status (queued, running, succeeded, failed, ...)"),
    ] = None,
    workflow: Annotated[str | None, Field(description="Filter by workflow name")] = None,
    limit: Annotated[int, Field(ge=1, le=1000)] = 100,
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """List asynchronous executions, most recent first. Optional: status, workflow, limit."""
    app_ctx = ctx.request_context.lifespan_context
    if not app_ctx.execution_queue:
        return {
            "error": "Execution queue not available",
            "message": "Asynchronous execution is not enabled",
            "executions": [],
            "total": 0,
        }

    status_filter = None
    if status:
        try:
            status_filter = ExecutionStatus(status.lower())
        except ValueError:
            valid = ", ".join(s.value for s in ExecutionStatus)
            return {
                "error": "Invalid status",
                "message": f"Invalid status: {status}. Valid values: {valid}",
                "executions": [],
            }

    executions = await app_ctx.execution_queue.list_executions(
        status=status_filter, workflow=workflow, limit=limit
    )
    if format == "markdown":
        return format_execution_list_markdown(executions, status)

    return {
        "executions": executions,
        "total": len(executions),
        "stats": await app_ctx.execution_queue.get_stats(),
    }


# =============================================================================
# Workflow Discovery Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Workflows",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_workflows(
    tags: Annotated[
        list[str],
        Field(
            description="Filter by tags (AND logic). Empty list returns all workflows.",
            max_length=20,
        ),
    ] = [],
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> str:
    """List workflow definitions. Optional: tags (filter), format (json|markdown)."""
    app_ctx = ctx.request_context.lifespan_context
    workflows = app_ctx.registry.list_all_metadata(tags=tags or None)

    if format == "markdown":
        return format_workflow_list_markdown(workflows, tags or None)
    return json.dumps(workflows)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Workflow Info",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_workflow_info(
    workflow: Annotated[
        str,
        Field(description="Workflow name to inspect", min_length=1, max_length=200),
    ],
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Get workflow details (states, transitions, task resources). Required: workflow."""
    app_ctx = ctx.request_context.lifespan_context
    registry = app_ctx.registry

    if workflow not in registry:
        return format_workflow_not_found_error(workflow, registry.list_names(), format)

    info = registry.get_workflow_metadata(workflow, detailed=True)
    definition = registry.get(workflow)
    states = []
    for name, state in definition.states.items():
        entry: dict[str, Any] = {"name": name, "type": state.type, "next": state.transitions()}
        if isinstance(state, TaskState):
            entry["resource"] = state.resource
        entry["end"] = isinstance(state, TERMINAL_TYPES) or bool(getattr(state, "end", False))
        states.append(entry)
    info["states"] = states

    if format == "markdown":
        return format_workflow_info_markdown(info)
    return info


@mcp.tool(
    annotations=ToolAnnotations(
        title="Validate Workflow",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def validate_workflow(
    definition_yaml: Annotated[
        str,
        Field(
            description="Complete workflow definition (YAML or JSON) to validate",
            min_length=10,
            max_length=100000,
        ),
    ],
) -> dict[str, Any]:
    """Validate a workflow definition without executing it. Required: definition_yaml."""
    load_result = load_definition_from_yaml(definition_yaml, source="<validation>")

    if not load_result.is_success or load_result.value is None:
        return {
            "valid": False,
            "errors": [load_result.error or "invalid definition", *load_result.details],
            "warnings": [],
            "state_types_used": [],
        }

    definition = load_result.value
    warnings: list[str] = []
    unreachable = sorted(set(definition.states) - definition.reachable())
    if unreachable:
        warnings.append(f"Unreachable states: {', '.join(unreachable)}")
    for path, name, state in definition.iter_states():
        if isinstance(state, ChoiceState) and state.default in {r.next for r in state.choices}:
            warnings.append(f"State '{path}{name}': Default is also a Choices target")

    return {
        "valid": True,
        "errors": [],
        "warnings": warnings,
        "state_types_used": sorted({state.type for _, _, state in definition.iter_states()}),
        "resources": definition.resources(),
    }


__all__ = [
    "start_execution",
    "execute_inline_workflow",
    "get_execution_status",
    "cancel_execution",
    "list_executions",
    "list_workflows",
    "get_workflow_info",
    "validate_workflow",
]
