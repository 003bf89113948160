"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import ExecutionInstance, StepRecord
from .repository import WorkflowRepository


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist execution state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                definition TEXT NOT NULL,
                context TEXT,
                status TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                status TEXT,
                output TEXT,
                error TEXT,
                UNIQUE (execution_id, step_id)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        definition: dict,
        context: dict | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO executions (execution_id, workflow_id, definition, context, status) VALUES (?, ?, ?, ?, ?)",
            execution_id,
            workflow_id,
            json.dumps(definition, default=str),
            json.dumps(context or {}, default=str),
            "pending",
        )

    async def mark_step_started(self, execution_id: str, step_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO step_history (execution_id, step_id, started_at) VALUES (?, ?, ?)",
            execution_id,
            step_id,
            _now(),
        )

    async def mark_step_completed(
        self,
        execution_id: str,
        step_id: str,
        status: str,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_history (execution_id, step_id, completed_at, status, output, error)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (execution_id, step_id) DO UPDATE SET
                completed_at = excluded.completed_at,
                status = excluded.status,
                output = excluded.output,
                error = excluded.error
            WHERE step_history.completed_at IS NULL
            """,
            execution_id,
            step_id,
            _now(),
            status,
            json.dumps(output, default=str),
            error,
        )

    async def update_context(self, execution_id: str, context: dict) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET context = ? WHERE execution_id = ?",
            json.dumps(context, default=str),
            execution_id,
        )

    async def update_status(self, execution_id: str, status: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE executions SET status = ? WHERE execution_id = ?",
            status,
            execution_id,
        )

    def _instance(self, row: sqlite3.Row, steps: list[StepRecord]) -> ExecutionInstance:
        return ExecutionInstance(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            definition=json.loads(row["definition"]),
            context=json.loads(row["context"]) if row["context"] else None,
            status=row["status"],
            steps=steps,
        )

    async def get_execution(self, execution_id: str) -> ExecutionInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT execution_id, workflow_id, definition, context, status FROM executions WHERE execution_id = ?",
            execution_id,
        )
        if not row:
            return None
        steps_rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, execution_id, step_id, started_at, completed_at, status, output, error FROM step_history WHERE execution_id = ? ORDER BY id",
            execution_id,
        )
        steps = [
            StepRecord(
                id=r["id"],
                execution_id=r["execution_id"],
                step_id=r["step_id"],
                started_at=datetime.fromisoformat(r["started_at"]) if r["started_at"] else None,
                completed_at=datetime.fromisoformat(r["completed_at"]) if r["completed_at"] else None,
                status=r["status"],
                output=json.loads(r["output"]) if r["output"] else None,
                error=r["error"],
            )
            for r in steps_rows
        ]
        return self._instance(row, steps)

    async def list_executions(self) -> list[ExecutionInstance]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT execution_id, workflow_id, definition, context, status FROM executions",
        )
        return [self._instance(row, []) for row in rows]
