"""Storage abstraction for idempotency records."""

from __future__ import annotations

from typing import Iterable, Protocol

from .models import IdempotencyRecord


class IdempotencyStore(Protocol):
    """Protocol for idempotency record backends.

    Implementations must be safe to share between concurrently running
    workflows.
    """

    async def get(self, key: str) -> IdempotencyRecord | None:
        """Return the record stored under ``key``."""

    async def put(self, record: IdempotencyRecord) -> None:
        """Store ``record``, replacing any previous record for its key."""

    async def delete_many(self, keys: Iterable[str]) -> int:
        """Remove records and their hit counters; return how many existed."""

    async def list_records(self) -> list[IdempotencyRecord]:
        """Return all stored records."""

    async def size(self) -> int:
        """Number of stored records."""

    async def oldest_keys(self, count: int) -> list[str]:
        """Keys of the ``count`` records with the smallest ``created_at``."""

    async def expired_keys(self, now: float) -> list[str]:
        """Keys of records whose ``expires_at`` is not after ``now``."""

    async def record_hit(self, key: str) -> int:
        """Increment and return the hit counter for ``key``."""

    async def hit_count(self, key: str) -> int:
        """Current hit counter for ``key``."""

    async def clear(self) -> int:
        """Remove everything; return how many records were removed."""
