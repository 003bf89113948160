"""Records and reports for the idempotency gate."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def _as_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class IdempotencyRecord(BaseModel):
    """Cached outcome of a successfully executed request. Never mutated."""

    model_config = ConfigDict(frozen=True)

    key: str
    result: Any = None
    action_type: Optional[str] = None
    target: Optional[str] = None
    signal_id: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def ttl_remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)

    @property
    def executed_at(self) -> datetime:
        return _as_datetime(self.created_at)


class IdempotencyCheck(BaseModel):
    key: str
    executed: bool
    cached_result: Any = None
    executed_at: Optional[datetime] = None
    ttl_remaining: Optional[float] = None


class IdempotencyOutcome(BaseModel):
    """Result of running a request through the gate."""

    key: str
    result: Any = None
    cached: bool = False


class IdempotencyStats(BaseModel):
    total_cached: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    duplicates_prevented: int = 0
    expired_cleaned: int = 0
    evicted: int = 0
    last_cleanup: Optional[datetime] = None

    @property
    def hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        return round(self.cache_hits / total, 4) if total else 0.0


class CacheInfo(BaseModel):
    size: int
    max_size: int
    ttl_seconds: float
    utilization: float
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
