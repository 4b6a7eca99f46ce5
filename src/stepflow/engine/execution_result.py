"""
Execution result monad.

Every run ends in an ExecutionResult, successful or not, and the trace is
always attached so that failures can be debugged from the partial run.
``to_response()`` is the single place that formats results for callers
(MCP tools, the execution queue).
"""

from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from .exceptions import error_fields
from .secrets import SecretRedactor
from .trace import ExecutionTrace

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """
    Outcome of one workflow execution.

    Example:
        result = ExecutionResult.success("exec-1", "video-deliver", output, trace)
        result = ExecutionResult.failure("exec-1", "video-deliver", exc, trace)
        return result.to_response(debug=True)
    """

    status: Literal["success", "failure"]
    execution_id: str
    workflow: str
    trace: ExecutionTrace
    output: Any = None
    error: str | None = None
    cause: str | None = None
    started_at: str = ""
    finished_at: str = ""
    trace_header: str | None = None
    secret_redactor: SecretRedactor | None = field(default=None, repr=False)

    @staticmethod
    def success(
        execution_id: str,
        workflow: str,
        output: Any,
        trace: ExecutionTrace,
        *,
        started_at: str = "",
        finished_at: str = "",
        secret_redactor: SecretRedactor | None = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            status="success",
            execution_id=execution_id,
            workflow=workflow,
            trace=trace,
            output=output,
            started_at=started_at,
            finished_at=finished_at,
            secret_redactor=secret_redactor,
        )

    @staticmethod
    def failure(
        execution_id: str,
        workflow: str,
        exc: BaseException,
        trace: ExecutionTrace,
        *,
        started_at: str = "",
        finished_at: str = "",
        secret_redactor: SecretRedactor | None = None,
    ) -> ExecutionResult:
        """
        Failure result from the exception that ended the run.

        ``error`` is the error class (ClassifiedError.error) or the exception
        type name for ExpressionError/ExecutionTimeout; ``cause`` the detail.
        """
        fields = error_fields(exc)
        return ExecutionResult(
            status="failure",
            execution_id=execution_id,
            workflow=workflow,
            trace=trace,
            error=fields["error"],
            cause=fields["cause"],
            started_at=started_at,
            finished_at=finished_at,
            secret_redactor=secret_redactor,
        )

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def _redact(self, data: Any) -> Any:
        if self.secret_redactor is None:
            return data
        return self.secret_redactor.redact(data)

    def to_dict(self) -> dict[str, Any]:
        """Full record including the trace (used for persistence and debug files)."""
        return self._redact(
            {
                "status": self.status,
                "execution_id": self.execution_id,
                "workflow": self.workflow,
                "output": self.output if self.succeeded else None,
                "error": self.error,
                "cause": self.cause,
                "started_at": self.started_at,
                "finished_at": self.finished_at,
                "trace_header": self.trace_header,
                "trace": self.trace.to_list(),
            }
        )

    def to_response(self, debug: bool = False) -> dict[str, Any]:
        """
        Format the result for callers.

        Examples:
            {"status": "success", "execution_id": "...", "output": {...}}
            {"status": "failure", "execution_id": "...", "error": "InvalidInput", "cause": "..."}

        With ``debug=True`` the full record is written to a temporary file and
        its path returned as ``logfile``.
        """
        response: dict[str, Any] = {"status": self.status, "execution_id": self.execution_id}
        if self.trace_header:
            response["trace_header"] = self.trace_header
        if self.succeeded:
            response["output"] = self._redact(self.output)
        else:
            response["error"] = self.error
            response["cause"] = self._redact(self.cause)

        if debug:
            response["logfile"] = self._write_debug_file()
        return response

    def _write_debug_file(self) -> str:
        safe_name = "".join(c if c.isalnum() or c in "-_" else "-" for c in self.workflow)
        timestamp_ms = int(datetime.now().timestamp() * 1000)
        path = Path(tempfile.gettempdir()) / f"{safe_name}-{timestamp_ms}.json"
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2, default=str, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to write debug file {path}: {e}")
            return f"ERROR: Failed to write debug file: {e}"

        logger.info(f"Debug file written: {path}")
        return str(path)


__all__ = ["ExecutionResult"]
