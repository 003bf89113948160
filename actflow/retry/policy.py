"""Retry policies and backoff computation."""

from __future__ import annotations

import random
from enum import Enum
from functools import lru_cache
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, Field

from ..constants import PLATFORM_RETRY_DEFAULTS
from .classify import DEFAULT_RETRYABLE_TYPES, ErrorType


class BackoffKind(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    FIBONACCI = "fibonacci"


class RetryPolicy(BaseModel):
    """How often and how patiently to retry calls to one platform.

    ``max_retries`` counts retries, so a call makes at most
    ``max_retries + 1`` attempts. Delays and timeouts are in seconds.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    multiplier: float = 2.0
    jitter: float = 0.1
    timeout: Optional[float] = None
    retryable_errors: frozenset[ErrorType] = Field(
        default_factory=lambda: DEFAULT_RETRYABLE_TYPES
    )
    refresh_auth_on_error: bool = False

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@lru_cache(maxsize=64)
def fibonacci(n: int) -> int:
    """fib(1) == fib(2) == 1."""
    if n <= 2:
        return 1
    return fibonacci(n - 1) + fibonacci(n - 2)


def base_backoff(retry_number: int, policy: RetryPolicy) -> float:
    """Delay before retry ``retry_number`` (1-based), capped, without jitter."""
    n = max(1, retry_number)
    if policy.backoff is BackoffKind.EXPONENTIAL:
        delay = policy.base_delay * policy.multiplier ** (n - 1)
    elif policy.backoff is BackoffKind.LINEAR:
        delay = policy.base_delay * n
    elif policy.backoff is BackoffKind.FIBONACCI:
        delay = policy.base_delay * fibonacci(n)
    else:
        delay = policy.base_delay
    return min(delay, policy.max_delay)


def compute_delay(
    retry_number: int, policy: RetryPolicy, rng: Optional[random.Random] = None
) -> float:
    """Compute backoff with jitter: the capped delay varied by +/- ``jitter``."""
    delay = base_backoff(retry_number, policy)
    if policy.jitter:
        spread = delay * policy.jitter
        delay += (rng or random).uniform(-spread, spread)
    return max(0.0, delay)


DEFAULT_POLICIES: Dict[str, RetryPolicy] = {
    platform: RetryPolicy(**values) for platform, values in PLATFORM_RETRY_DEFAULTS.items()
}


def default_policy(platform: str) -> RetryPolicy:
    return DEFAULT_POLICIES.get(platform.lower(), DEFAULT_POLICIES["generic"])


def merge_policy(base: RetryPolicy, overrides: Mapping[str, object]) -> RetryPolicy:
    """Copy ``base`` with every non-``None`` override applied."""
    updates = {k: v for k, v in overrides.items() if v is not None}
    if "backoff" in updates:
        updates["backoff"] = BackoffKind(updates["backoff"])
    return base.model_copy(update=updates)
