"""In-memory idempotency store."""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable

from .models import IdempotencyRecord
from .store import IdempotencyStore


class InMemoryIdempotencyStore(IdempotencyStore):
    """Keep records in a dict guarded by an ``asyncio.Lock``.

    Each gate gets its own instance, so tests never share cache state.
    """

    def __init__(self) -> None:
        self._records: Dict[str, IdempotencyRecord] = {}
        self._hits: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> IdempotencyRecord | None:
        async with self._lock:
            return self._records.get(key)

    async def put(self, record: IdempotencyRecord) -> None:
        async with self._lock:
            self._records[record.key] = record
            self._hits.setdefault(record.key, 0)

    async def delete_many(self, keys: Iterable[str]) -> int:
        removed = 0
        async with self._lock:
            for key in keys:
                if self._records.pop(key, None) is not None:
                    removed += 1
                self._hits.pop(key, None)
        return removed

    async def list_records(self) -> list[IdempotencyRecord]:
        async with self._lock:
            return list(self._records.values())

    async def size(self) -> int:
        async with self._lock:
            return len(self._records)

    async def oldest_keys(self, count: int) -> list[str]:
        async with self._lock:
            ordered = sorted(self._records.values(), key=lambda r: r.created_at)
            return [r.key for r in ordered[:count]]

    async def expired_keys(self, now: float) -> list[str]:
        async with self._lock:
            return [k for k, r in self._records.items() if r.is_expired(now)]

    async def record_hit(self, key: str) -> int:
        async with self._lock:
            self._hits[key] = self._hits.get(key, 0) + 1
            return self._hits[key]

    async def hit_count(self, key: str) -> int:
        async with self._lock:
            return self._hits.get(key, 0)

    async def clear(self) -> int:
        async with self._lock:
            removed = len(self._records)
            self._records.clear()
            self._hits.clear()
            return removed
