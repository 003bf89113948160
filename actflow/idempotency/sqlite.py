"""SQLite implementation of the idempotency store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable

from .models import IdempotencyRecord
from .store import IdempotencyStore


class SQLiteIdempotencyStore(IdempotencyStore):
    """Persist idempotency records using SQLite.

    Lets a gate survive process restarts, which matters when a signal source
    redelivers after a crash.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_records (
                key TEXT PRIMARY KEY,
                record TEXT NOT NULL,
                created_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                hits INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_idem_created ON idempotency_records(created_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _delete_many(self, keys: list[str]) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.executemany(
                "DELETE FROM idempotency_records WHERE key = ?", [(k,) for k in keys]
            )
            self._conn.commit()
            return cur.rowcount

    def _increment(self, key: str) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("UPDATE idempotency_records SET hits = hits + 1 WHERE key = ?", (key,))
            self._conn.commit()
            cur.execute("SELECT hits FROM idempotency_records WHERE key = ?", (key,))
            row = cur.fetchone()
            return row["hits"] if row else 0

    # ------------------------------------------------------------------
    # Store API
    async def get(self, key: str) -> IdempotencyRecord | None:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT record FROM idempotency_records WHERE key = ?", key
        )
        if not rows:
            return None
        return IdempotencyRecord.model_validate_json(rows[0]["record"])

    async def put(self, record: IdempotencyRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO idempotency_records (key, record, created_at, expires_at, hits)
            VALUES (?, ?, ?, ?, 0)
            ON CONFLICT(key) DO UPDATE SET
                record = excluded.record,
                created_at = excluded.created_at,
                expires_at = excluded.expires_at,
                hits = 0
            """,
            record.key,
            record.model_dump_json(),
            record.created_at,
            record.expires_at,
        )

    async def delete_many(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        return await asyncio.to_thread(self._delete_many, keys)

    async def list_records(self) -> list[IdempotencyRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT record FROM idempotency_records ORDER BY created_at"
        )
        return [IdempotencyRecord.model_validate_json(r["record"]) for r in rows]

    async def size(self) -> int:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT COUNT(*) AS n FROM idempotency_records"
        )
        return rows[0]["n"]

    async def oldest_keys(self, count: int) -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT key FROM idempotency_records ORDER BY created_at LIMIT ?",
            count,
        )
        return [r["key"] for r in rows]

    async def expired_keys(self, now: float) -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT key FROM idempotency_records WHERE expires_at <= ?",
            now,
        )
        return [r["key"] for r in rows]

    async def record_hit(self, key: str) -> int:
        return await asyncio.to_thread(self._increment, key)

    async def hit_count(self, key: str) -> int:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT hits FROM idempotency_records WHERE key = ?", key
        )
        return rows[0]["hits"] if rows else 0

    async def clear(self) -> int:
        return await asyncio.to_thread(self._execute, "DELETE FROM idempotency_records")

    def close(self) -> None:
        self._conn.close()
