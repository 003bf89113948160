"""Attempt context and statistics for the retry engine."""

from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field


class RetryAttemptContext(BaseModel):
    """Snapshot of one failed attempt, passed to observers and logs."""

    platform: str
    operation: str
    attempt: int
    max_attempts: int
    error_type: str
    last_error: str
    next_delay: Optional[float] = None
    elapsed_wait: float = 0.0
    auth_refreshed: bool = False


class PlatformStats(BaseModel):
    total_operations: int = 0
    successful_first_attempt: int = 0
    successful_after_retries: int = 0
    failed_after_retries: int = 0
    cancelled: int = 0
    total_retries: int = 0
    errors_by_type: Dict[str, int] = Field(default_factory=dict)
    rate_limit_hits: int = 0
    circuit_rejections: int = 0
    token_refreshes: int = 0
    total_success_time: float = 0.0

    @property
    def successes(self) -> int:
        return self.successful_first_attempt + self.successful_after_retries

    @property
    def avg_success_time(self) -> float:
        return self.total_success_time / self.successes if self.successes else 0.0

    @property
    def success_rate(self) -> float:
        finished = self.successes + self.failed_after_retries
        return self.successes / finished if finished else 0.0
