"""Persistent execution records using SQLite + JSON files.

Architecture:
    - SQLite (state.db): execution metadata for listing and stale detection
    - JSON files (executions/*.json): full records with input, output and trace
    - Write-through: every status change is persisted immediately
    - Load-on-demand: no in-memory cache

Blocking I/O runs in the default thread pool executor.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar, cast

from .state_config import StateConfig

if TYPE_CHECKING:
    from .execution_queue import ExecutionRecord, ExecutionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAT_KEYS = (
    "total_executions",
    "succeeded_executions",
    "failed_executions",
    "timed_out_executions",
    "cancelled_executions",
)


class ExecutionStore:
    """
    Durable storage for asynchronous executions.

    SQLite runs in WAL mode so that several server processes started from
    the same directory can share one store.

    Example:
        store = ExecutionStore()
        await store.init()
        await store.save(record)
        data = await store.load("exec_abc123")
        rows = await store.list_executions(status=ExecutionStatus.SUCCEEDED, limit=20)
    """

    def __init__(self, state_dir: str | Path | None = None) -> None:
        config = StateConfig(state_dir)
        self._db_path = config.get_db_path()
        self._executions_dir = config.get_executions_dir()

    @property
    def executions_dir(self) -> Path:
        return self._executions_dir

    def record_path(self, execution_id: str) -> Path:
        return self._executions_dir / f"{execution_id}.json"

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    async def init(self) -> None:
        """Create tables and indexes. Must be called before use."""
        await self._run_in_executor(self._init_db)
        logger.info(
            f"ExecutionStore initialized: db={self._db_path}, dir={self._executions_dir}"
        )

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS executions (
                    id TEXT PRIMARY KEY,
                    workflow TEXT NOT NULL,
                    status TEXT NOT NULL,
                    timeout REAL NOT NULL,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    updated_at TEXT NOT NULL,
                    error_summary TEXT,
                    trace_header TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_status ON executions(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_created ON executions(created_at DESC)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS stats (
                    key TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            for key in STAT_KEYS:
                conn.execute("INSERT OR IGNORE INTO stats VALUES (?, 0)", (key,))

    async def save(self, record: ExecutionRecord) -> None:
        """Persist a record: JSON file first (atomic rename), then metadata."""
        record.updated_at = datetime.now()
        await self._run_in_executor(lambda: self._write_file(record))
        await self._run_in_executor(lambda: self._write_metadata(record))

    def _write_file(self, record: ExecutionRecord) -> None:
        path = self.record_path(record.id)
        temp_path = path.with_suffix(".json.tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(record.model_dump(mode="json"), f, indent=2, ensure_ascii=False)
        temp_path.replace(path)

    def _write_metadata(self, record: ExecutionRecord) -> None:
        summary = f"{record.error}: {record.cause or ''}"[:200] if record.error else None
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO executions VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.workflow,
                    record.status.value,
                    record.timeout,
                    record.created_at.isoformat(),
                    record.started_at.isoformat() if record.started_at else None,
                    record.completed_at.isoformat() if record.completed_at else None,
                    record.updated_at.isoformat(),
                    summary,
                    record.trace_header,
                ),
            )

    async def load(self, execution_id: str) -> dict[str, Any]:
        """
        Load a full record.

        Raises:
            KeyError: Unknown execution id
            FileNotFoundError: Metadata exists but the JSON file is gone
        """
        if not await self.exists(execution_id):
            raise KeyError(f"Execution not found: {execution_id}")

        def _read() -> dict[str, Any]:
            path = self.record_path(execution_id)
            if not path.exists():
                raise FileNotFoundError(f"Execution record missing: {execution_id}")
            with open(path, encoding="utf-8") as f:
                return cast(dict[str, Any], json.load(f))

        return await self._run_in_executor(_read)

    async def exists(self, execution_id: str) -> bool:
        def _check() -> bool:
            with self._connect() as conn:
                cursor = conn.execute("SELECT 1 FROM executions WHERE id = ?", (execution_id,))
                return cursor.fetchone() is not None

        return await self._run_in_executor(_check)

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Metadata rows, most recent first. Full records are not loaded."""
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if workflow is not None:
            clauses.append("workflow = ?")
            params.append(workflow)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        def _query() -> list[dict[str, Any]]:
            with self._connect() as conn:
                conn.row_factory = sqlite3.Row
                cursor = conn.execute(
                    f"""
                    SELECT id, workflow, status, timeout, created_at, started_at,
                           completed_at, error_summary, trace_header
                    FROM executions
                    {where}
                    ORDER BY created_at DESC
                    LIMIT ?
                    """,
                    params,
                )
                return [dict(row) for row in cursor.fetchall()]

        return await self._run_in_executor(_query)

    async def delete(self, execution_id: str) -> None:
        def _delete() -> None:
            with self._connect() as conn:
                conn.execute("DELETE FROM executions WHERE id = ?", (execution_id,))
            self.record_path(execution_id).unlink(missing_ok=True)

        await self._run_in_executor(_delete)

    async def get_stale(self, grace_period: float = 600) -> list[str]:
        """Ids of ``running`` executions not updated within timeout + grace period."""

        def _query() -> list[str]:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT id, timeout, updated_at FROM executions WHERE status = 'running'"
                ).fetchall()
            now = datetime.now()
            return [
                execution_id
                for execution_id, timeout, updated_at in rows
                if (now - datetime.fromisoformat(updated_at)).total_seconds()
                > timeout + grace_period
            ]

        return await self._run_in_executor(_query)

    async def get_oldest(self, keep: int) -> list[str]:
        """Ids of finished executions beyond the ``keep`` most recent ones."""

        def _query() -> list[str]:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id FROM executions
                    WHERE status NOT IN ('queued', 'running')
                    ORDER BY created_at DESC
                    LIMIT -1 OFFSET ?
                    """,
                    (keep,),
                ).fetchall()
            return [row[0] for row in rows]

        return await self._run_in_executor(_query)

    async def increment_stat(self, key: str) -> None:
        def _increment() -> None:
            with self._connect() as conn:
                conn.execute("UPDATE stats SET value = value + 1 WHERE key = ?", (key,))

        await self._run_in_executor(_increment)

    async def get_stats(self) -> dict[str, int]:
        def _query() -> dict[str, int]:
            with self._connect() as conn:
                return dict(conn.execute("SELECT key, value FROM stats").fetchall())

        return await self._run_in_executor(_query)

    async def _run_in_executor(self, func: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)


__all__ = ["ExecutionStore", "STAT_KEYS"]
