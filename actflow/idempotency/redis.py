"""Redis implementation of the idempotency store."""

from __future__ import annotations

import math
import time
from typing import Any, Iterable, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .models import IdempotencyRecord
from .store import IdempotencyStore


class RedisIdempotencyStore(IdempotencyStore):
    """Share idempotency records between processes through Redis.

    Records are stored as JSON strings with a native expiry; a sorted set
    ordered by ``created_at`` supports eviction and a hash holds hit counters.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "actflow:idem",
        client: Any = None,
    ) -> None:
        if redis is None and client is None:
            raise ImportError("redis package is required for RedisIdempotencyStore")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = client

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    def _record_key(self, key: str) -> str:
        return f"{self.prefix}:record:{key}"

    @property
    def _index(self) -> str:
        return f"{self.prefix}:index"

    @property
    def _hits(self) -> str:
        return f"{self.prefix}:hits"

    # ------------------------------------------------------------------
    async def get(self, key: str) -> IdempotencyRecord | None:
        client = await self._client()
        raw = await client.get(self._record_key(key))
        if raw is None:
            return None
        return IdempotencyRecord.model_validate_json(raw)

    async def put(self, record: IdempotencyRecord) -> None:
        client = await self._client()
        ttl = max(1, math.ceil(record.expires_at - time.time()))
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._record_key(record.key), record.model_dump_json(), ex=ttl)
            pipe.zadd(self._index, {record.key: record.created_at})
            pipe.hset(self._hits, record.key, 0)
            await pipe.execute()

    async def delete_many(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(*[self._record_key(k) for k in keys])
            pipe.zrem(self._index, *keys)
            pipe.hdel(self._hits, *keys)
            deleted, unindexed, _ = await pipe.execute()
        # Records Redis already expired still count as removed from the index.
        return max(deleted, unindexed)

    async def list_records(self) -> list[IdempotencyRecord]:
        client = await self._client()
        keys = await client.zrange(self._index, 0, -1)
        records: list[IdempotencyRecord] = []
        for key in keys:
            record = await self.get(key)
            if record is not None:
                records.append(record)
        return records

    async def size(self) -> int:
        client = await self._client()
        return await client.zcard(self._index)

    async def oldest_keys(self, count: int) -> list[str]:
        client = await self._client()
        return list(await client.zrange(self._index, 0, count - 1))

    async def expired_keys(self, now: float) -> list[str]:
        client = await self._client()
        expired: list[str] = []
        for key in await client.zrange(self._index, 0, -1):
            record = await self.get(key)
            if record is None or record.is_expired(now):
                expired.append(key)
        return expired

    async def record_hit(self, key: str) -> int:
        client = await self._client()
        return int(await client.hincrby(self._hits, key, 1))

    async def hit_count(self, key: str) -> int:
        client = await self._client()
        value = await client.hget(self._hits, key)
        return int(value or 0)

    async def clear(self) -> int:
        client = await self._client()
        keys = await client.zrange(self._index, 0, -1)
        await self.delete_many(keys)
        return len(keys)
