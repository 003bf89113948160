"""Idempotency gate and its storage backends."""

from __future__ import annotations

from typing import Optional

from ..config import ActflowConfig, load_config
from .gate import IdempotencyGate
from .inmemory import InMemoryIdempotencyStore
from .keys import canonical_json, derive_key, hash_params, params_equivalent, parse_key
from .models import CacheInfo, IdempotencyCheck, IdempotencyOutcome, IdempotencyRecord, IdempotencyStats
from .sqlite import SQLiteIdempotencyStore
from .store import IdempotencyStore


def get_idempotency_store(
    backend: Optional[str] = None, config: Optional[ActflowConfig] = None
) -> IdempotencyStore:
    """Factory function to get the configured idempotency store."""

    config = config or load_config()
    conf = config.idempotency
    backend = (backend or conf.backend).lower()

    if backend == "inmemory":
        return InMemoryIdempotencyStore()
    elif backend == "sqlite":
        return SQLiteIdempotencyStore(conf.sqlite_path)
    elif backend == "redis":
        from .redis import RedisIdempotencyStore

        return RedisIdempotencyStore(
            host=conf.redis.host,
            port=conf.redis.port,
            db=conf.redis.db,
            password=conf.redis.password,
            prefix=conf.redis.prefix,
        )
    else:
        raise ValueError(f"Unsupported idempotency backend: {backend}")


def get_idempotency_gate(
    config: Optional[ActflowConfig] = None, store: Optional[IdempotencyStore] = None
) -> IdempotencyGate:
    """Build a gate from configuration."""

    config = config or load_config()
    conf = config.idempotency
    return IdempotencyGate(
        store or get_idempotency_store(config=config),
        ttl=conf.ttl_seconds,
        max_cache_size=conf.max_cache_size,
        eviction_fraction=conf.eviction_fraction,
        cleanup_interval=conf.cleanup_interval,
        key_locking=conf.key_locking,
    )


__all__ = [
    "CacheInfo",
    "IdempotencyCheck",
    "IdempotencyGate",
    "IdempotencyOutcome",
    "IdempotencyRecord",
    "IdempotencyStats",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "SQLiteIdempotencyStore",
    "canonical_json",
    "derive_key",
    "get_idempotency_gate",
    "get_idempotency_store",
    "hash_params",
    "params_equivalent",
    "parse_key",
]
