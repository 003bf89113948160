"""Retry policy engine."""

from .breaker import BreakerStats, CircuitBreaker, CircuitState
from .classify import ErrorType, RateLimitInfo, classify_error, extract_rate_limit_info, is_retryable
from .engine import AuthRefresher, RetryEngine
from .models import PlatformStats, RetryAttemptContext
from .policy import (
    DEFAULT_POLICIES,
    BackoffKind,
    RetryPolicy,
    base_backoff,
    compute_delay,
    default_policy,
    fibonacci,
    merge_policy,
)

__all__ = [
    "AuthRefresher",
    "BackoffKind",
    "BreakerStats",
    "CircuitBreaker",
    "CircuitState",
    "DEFAULT_POLICIES",
    "ErrorType",
    "PlatformStats",
    "RateLimitInfo",
    "RetryAttemptContext",
    "RetryEngine",
    "RetryPolicy",
    "base_backoff",
    "classify_error",
    "compute_delay",
    "default_policy",
    "extract_rate_limit_info",
    "fibonacci",
    "is_retryable",
    "merge_policy",
]
