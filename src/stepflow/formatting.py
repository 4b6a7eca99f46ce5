"""Shared formatting utilities for MCP tool responses.

Markdown output is for humans, JSON output (plain dicts) for programmatic
access. All markdown rendering lives here so that tools stay thin.
"""

from typing import Any

# =============================================================================
# Markdown Formatting Utilities
# =============================================================================


def format_workflow_list_markdown(
    workflows: list[dict[str, Any]], tags: list[str] | None = None
) -> str:
    """Format workflow metadata (name, comment, tags) as a markdown list."""
    if not workflows:
        tag_msg = f" with tags: {', '.join(tags)}" if tags else ""
        return f"No workflows found{tag_msg}"

    header = f"## Available Workflows ({len(workflows)})"
    if tags:
        header += f"\n**Filtered by tags**: {', '.join(tags)}"

    lines = []
    for workflow in workflows:
        line = f"- **{workflow['name']}**"
        if workflow.get("comment"):
            line += f": {workflow['comment']}"
        if workflow.get("tags"):
            line += f" ({', '.join(workflow['tags'])})"
        lines.append(line)
    return f"{header}\n\n" + "\n".join(lines)


def format_workflow_info_markdown(info: dict[str, Any]) -> str:
    """Format detailed workflow info as markdown.

    Args:
        info: Dictionary built by the get_workflow_info tool

    Returns:
        Markdown with configuration, states and task resources sections
    """
    lines = [f"# Workflow: {info['name']}", ""]
    if info.get("comment"):
        lines.extend([info["comment"], ""])

    lines.extend(
        [
            "## Configuration",
            f"- **Version**: {info.get('version', '1.0')}",
            f"- **Start At**: {info['start_at']}",
            f"- **Total States**: {len(info['states'])}",
        ]
    )
    if info.get("timeout_seconds"):
        lines.append(f"- **Timeout**: {info['timeout_seconds']:g}s")
    if info.get("tags"):
        lines.append(f"- **Tags**: {', '.join(info['tags'])}")

    lines.extend(["", "## States"])
    for state in info["states"]:
        state_line = f"- **{state['name']}** ({state['type']})"
        if state.get("resource"):
            state_line += f" `{state['resource']}`"
        if state.get("next"):
            state_line += f" -> {', '.join(state['next'])}"
        elif state.get("end"):
            state_line += " (end)"
        lines.append(state_line)

    if info.get("resources"):
        lines.extend(["", "## Task Resources"])
        lines.extend(f"- {resource}" for resource in info["resources"])

    return "\n".join(lines)


def format_execution_list_markdown(
    executions: list[dict[str, Any]], status_filter: str | None = None
) -> str:
    if not executions:
        filter_msg = f" with status: {status_filter}" if status_filter else ""
        return f"No executions found{filter_msg}"

    lines = [f"## Executions ({len(executions)})"]
    if status_filter:
        lines.append(f"**Filtered by status**: {status_filter}")
    lines.append("")

    for execution in executions:
        lines.append(f"### {execution['id']}")
        lines.append(f"- **Workflow**: {execution['workflow']}")
        lines.append(f"- **Status**: {execution['status']}")
        lines.append(f"- **Created**: {execution['created_at']}")
        if execution.get("completed_at"):
            lines.append(f"- **Completed**: {execution['completed_at']}")
        if execution.get("error_summary"):
            lines.append(f"- **Error**: {execution['error_summary']}")
        lines.append("")

    return "\n".join(lines)


# =============================================================================
# Error Formatting Utilities
# =============================================================================


def format_workflow_not_found_error(
    workflow_name: str, available: list[str], format_type: str = "json"
) -> dict[str, Any] | str:
    """Format a workflow-not-found error listing the available workflows.

    Args:
        workflow_name: The workflow name that was not found
        available: Registered workflow names
        format_type: Response format ("json" or "markdown")
    """
    if format_type == "markdown":
        workflow_list = "\n".join(f"- {name}" for name in available)
        return (
            f"**Error**: Workflow not found: `{workflow_name}`\n\n"
            f"**Available workflows:**\n{workflow_list}"
        )
    return {
        "error": f"Workflow not found: {workflow_name}",
        "available_workflows": available,
    }


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "format_workflow_list_markdown",
    "format_workflow_info_markdown",
    "format_execution_list_markdown",
    "format_workflow_not_found_error",
]
