"""Exactly-once dispatch for logical action requests."""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional

from ..constants import (
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_EVICTION_FRACTION,
    DEFAULT_IDEMPOTENCY_TTL,
    DEFAULT_MAX_CACHE_SIZE,
)
from ..contracts import ActionRequest
from .inmemory import InMemoryIdempotencyStore
from .keys import derive_key
from .models import CacheInfo, IdempotencyCheck, IdempotencyOutcome, IdempotencyRecord, IdempotencyStats
from .store import IdempotencyStore

logger = logging.getLogger(__name__)

Executor = Callable[[], Awaitable[Any]]


class _KeyLocks:
    """Per-key asyncio locks that are dropped once nobody holds or waits."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class IdempotencyGate:
    """Check-then-execute-then-mark wrapper around action execution.

    Only successful outcomes are cached: if the executor raises, nothing is
    stored and the next identical request executes again.

    Without ``key_locking`` two callers that miss the cache at the same time
    may both execute. The first to finish is the one stored; each caller
    still gets back the result its own executor produced. With
    ``key_locking`` callers of the same key are serialised so the second one
    sees the first one's cached result.
    """

    def __init__(
        self,
        store: Optional[IdempotencyStore] = None,
        *,
        ttl: float = DEFAULT_IDEMPOTENCY_TTL,
        max_cache_size: int = DEFAULT_MAX_CACHE_SIZE,
        eviction_fraction: float = DEFAULT_EVICTION_FRACTION,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        key_locking: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_cache_size < 1:
            raise ValueError("max_cache_size must be at least 1")
        self.store = store or InMemoryIdempotencyStore()
        self.ttl = ttl
        self.max_cache_size = max_cache_size
        self.eviction_fraction = eviction_fraction
        self.cleanup_interval = cleanup_interval
        self.key_locking = key_locking
        self._clock = clock
        self._key_locks = _KeyLocks()
        self._stats_lock = threading.Lock()
        self._stats = IdempotencyStats()
        self._cleanup_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Keys
    @staticmethod
    def key_for(request: ActionRequest) -> str:
        return derive_key(request.signal_id, request.action_type, request.target, request.params)

    # ------------------------------------------------------------------
    # Core operations
    async def check_executed(self, key: str) -> IdempotencyCheck:
        """Look up ``key``; expired records are removed and count as a miss."""
        record = await self.store.get(key)
        now = self._clock()
        if record is not None and record.is_expired(now):
            await self._remove([key], reason="expired")
            record = None

        if record is None:
            self._bump(cache_misses=1)
            return IdempotencyCheck(key=key, executed=False)

        await self.store.record_hit(key)
        self._bump(cache_hits=1)
        return IdempotencyCheck(
            key=key,
            executed=True,
            cached_result=record.result,
            executed_at=record.executed_at,
            ttl_remaining=record.ttl_remaining(now),
        )

    async def mark_executed(
        self,
        key: str,
        result: Any,
        ttl: Optional[float] = None,
        *,
        request: Optional[ActionRequest] = None,
    ) -> IdempotencyRecord:
        """Store ``result`` under ``key``.

        A live record for the same key is kept as is: the first successful
        writer wins and the existing record is returned.
        """
        now = self._clock()
        existing = await self.store.get(key)
        if existing is not None and not existing.is_expired(now):
            logger.debug(f"Key {key} already marked; keeping first result")
            return existing

        await self._evict_if_full(incoming=existing is None)
        record = IdempotencyRecord(
            key=key,
            result=result,
            action_type=request.action_type if request else None,
            target=request.target if request else None,
            signal_id=request.signal_id if request else None,
            params=dict(request.params) if request else {},
            created_at=now,
            expires_at=now + (self.ttl if ttl is None else ttl),
        )
        await self.store.put(record)
        logger.debug(f"Marked {key} as executed (ttl={ttl or self.ttl}s)")
        return record

    async def execute(
        self,
        request: ActionRequest,
        executor: Executor,
        ttl: Optional[float] = None,
    ) -> IdempotencyOutcome:
        """Run ``executor`` unless ``request`` already succeeded within its TTL."""
        key = self.key_for(request)
        if not self.key_locking:
            return await self._execute_once(key, request, executor, ttl)
        async with self._key_locks.hold(key):
            return await self._execute_once(key, request, executor, ttl)

    async def execute_with_idempotency(
        self,
        request: ActionRequest,
        executor: Executor,
        ttl: Optional[float] = None,
    ) -> Any:
        outcome = await self.execute(request, executor, ttl)
        return outcome.result

    async def _execute_once(
        self,
        key: str,
        request: ActionRequest,
        executor: Executor,
        ttl: Optional[float],
    ) -> IdempotencyOutcome:
        check = await self.check_executed(key)
        if check.executed:
            self._bump(duplicates_prevented=1)
            logger.info(
                f"Duplicate {request.target}.{request.action_type} prevented (key={key})"
            )
            return IdempotencyOutcome(key=key, result=check.cached_result, cached=True)

        result = await executor()
        await self.mark_executed(key, result, ttl, request=request)
        return IdempotencyOutcome(key=key, result=result, cached=False)

    # ------------------------------------------------------------------
    # Removal: eviction and cleanup share this path
    async def _remove(self, keys: Iterable[str], reason: str) -> int:
        keys = list(keys)
        if not keys:
            return 0
        removed = await self.store.delete_many(keys)
        if reason == "expired":
            self._bump(expired_cleaned=removed)
        elif reason == "evicted":
            self._bump(evicted=removed)
        logger.debug(f"Removed {removed} idempotency record(s): {reason}")
        return removed

    async def _evict_if_full(self, incoming: bool = True) -> int:
        if not incoming:
            return 0
        size = await self.store.size()
        if size < self.max_cache_size:
            return 0
        count = max(1, math.ceil(self.max_cache_size * self.eviction_fraction))
        oldest = await self.store.oldest_keys(count)
        removed = await self._remove(oldest, reason="evicted")
        logger.info(f"Idempotency cache full ({size}); evicted {removed} oldest record(s)")
        return removed

    async def cleanup_expired(self) -> int:
        """Remove every expired record."""
        expired = await self.store.expired_keys(self._clock())
        removed = await self._remove(expired, reason="expired")
        with self._stats_lock:
            self._stats.last_cleanup = datetime.now(timezone.utc)
        if removed:
            logger.info(f"Cleaned up {removed} expired idempotency record(s)")
        return removed

    # ------------------------------------------------------------------
    # Background cleanup
    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.cleanup_expired()
            except Exception as exc:
                logger.error(f"Idempotency cleanup failed: {exc}", exc_info=True)

    def start_auto_cleanup(self) -> None:
        """Start the periodic cleanup task on the running loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Idempotency auto-cleanup started (every {self.cleanup_interval}s)")

    async def stop_auto_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Idempotency auto-cleanup stopped")

    @property
    def auto_cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def __aenter__(self) -> "IdempotencyGate":
        self.start_auto_cleanup()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop_auto_cleanup()

    # ------------------------------------------------------------------
    # Statistics
    def _bump(self, **counters: int) -> None:
        with self._stats_lock:
            for name, amount in counters.items():
                setattr(self._stats, name, getattr(self._stats, name) + amount)

    async def stats(self) -> IdempotencyStats:
        size = await self.store.size()
        with self._stats_lock:
            return self._stats.model_copy(update={"total_cached": size})

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = IdempotencyStats()

    # ------------------------------------------------------------------
    # Queries and maintenance
    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        record = await self.store.get(key)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    async def hits(self, key: str) -> int:
        return await self.store.hit_count(key)

    async def clear_key(self, key: str) -> bool:
        return bool(await self.store.delete_many([key]))

    async def clear_all(self) -> int:
        removed = await self.store.clear()
        logger.info(f"Cleared {removed} idempotency record(s)")
        return removed

    async def cached_keys(
        self,
        *,
        action_type: Optional[str] = None,
        target: Optional[str] = None,
        signal_id: Optional[str] = None,
    ) -> list[str]:
        now = self._clock()
        return [
            r.key
            for r in await self.store.list_records()
            if not r.is_expired(now)
            and (action_type is None or r.action_type == action_type)
            and (target is None or r.target == target)
            and (signal_id is None or r.signal_id == signal_id)
        ]

    async def expiring_soon(self, within: float = 3600) -> list[IdempotencyRecord]:
        """Live records that expire within ``within`` seconds."""
        now = self._clock()
        return [
            r
            for r in await self.store.list_records()
            if not r.is_expired(now) and r.expires_at - now <= within
        ]

    async def cache_info(self) -> CacheInfo:
        records = await self.store.list_records()
        created = [r.created_at for r in records]
        size = len(records)
        return CacheInfo(
            size=size,
            max_size=self.max_cache_size,
            ttl_seconds=self.ttl,
            utilization=round(size / self.max_cache_size, 4),
            oldest_entry=datetime.fromtimestamp(min(created), tz=timezone.utc) if created else None,
            newest_entry=datetime.fromtimestamp(max(created), tz=timezone.utc) if created else None,
        )
