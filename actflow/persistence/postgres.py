"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import asyncpg

from .models import ExecutionInstance, StepRecord
from .repository import WorkflowRepository


def _loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist execution state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                definition JSONB NOT NULL,
                context JSONB,
                status TEXT NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                status TEXT,
                output JSONB,
                error TEXT,
                UNIQUE (execution_id, step_id)
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        definition: dict,
        context: dict | None = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO executions (execution_id, workflow_id, definition, context, status) VALUES ($1, $2, $3, $4, $5)",
                execution_id,
                workflow_id,
                json.dumps(definition, default=str),
                json.dumps(context or {}, default=str),
                "pending",
            )
        finally:
            await conn.close()

    async def mark_step_started(self, execution_id: str, step_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_history (execution_id, step_id, started_at) VALUES ($1, $2, $3)
                ON CONFLICT (execution_id, step_id) DO NOTHING
                """,
                execution_id,
                step_id,
                datetime.now(timezone.utc),
            )
        finally:
            await conn.close()

    async def mark_step_completed(
        self,
        execution_id: str,
        step_id: str,
        status: str,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_history (execution_id, step_id, completed_at, status, output, error)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (execution_id, step_id) DO UPDATE SET
                    completed_at = EXCLUDED.completed_at,
                    status = EXCLUDED.status,
                    output = EXCLUDED.output,
                    error = EXCLUDED.error
                WHERE step_history.completed_at IS NULL
                """,
                execution_id,
                step_id,
                datetime.now(timezone.utc),
                status,
                json.dumps(output, default=str),
                error,
            )
        finally:
            await conn.close()

    async def update_context(self, execution_id: str, context: dict) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE executions SET context = $1 WHERE execution_id = $2",
                json.dumps(context, default=str),
                execution_id,
            )
        finally:
            await conn.close()

    async def update_status(self, execution_id: str, status: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE executions SET status = $1 WHERE execution_id = $2",
                status,
                execution_id,
            )
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> ExecutionInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT execution_id, workflow_id, definition, context, status FROM executions WHERE execution_id = $1",
                execution_id,
            )
            if not row:
                return None
            steps_rows = await conn.fetch(
                "SELECT id, execution_id, step_id, started_at, completed_at, status, output, error FROM step_history WHERE execution_id = $1 ORDER BY id",
                execution_id,
            )
        finally:
            await conn.close()
        steps = [
            StepRecord(
                id=r["id"],
                execution_id=r["execution_id"],
                step_id=r["step_id"],
                started_at=r["started_at"],
                completed_at=r["completed_at"],
                status=r["status"],
                output=_loads(r["output"]),
                error=r["error"],
            )
            for r in steps_rows
        ]
        return ExecutionInstance(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            definition=_loads(row["definition"]),
            context=_loads(row["context"]),
            status=row["status"],
            steps=steps,
        )

    async def list_executions(self) -> list[ExecutionInstance]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT execution_id, workflow_id, definition, context, status FROM executions"
            )
        finally:
            await conn.close()
        return [
            ExecutionInstance(
                execution_id=r["execution_id"],
                workflow_id=r["workflow_id"],
                definition=_loads(r["definition"]),
                context=_loads(r["context"]),
                status=r["status"],
                steps=[],
            )
            for r in rows
        ]
