from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BREAKER_FAILURE_THRESHOLD,
    DEFAULT_BREAKER_FAILURE_WINDOW,
    DEFAULT_BREAKER_RESET_TIMEOUT,
    DEFAULT_BREAKER_SUCCESS_THRESHOLD,
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_EVICTION_FRACTION,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_IDEMPOTENCY_TTL,
    DEFAULT_MAX_CACHE_SIZE,
    DEFAULT_MAX_TOTAL_RETRY_TIME,
    DEFAULT_RATE_LIMIT_BUFFER,
    DEFAULT_ROLLBACK_TIMEOUT,
)


class RedisConfig(BaseModel):
    """Connection settings for the Redis idempotency store."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "actflow:idem"


class IdempotencyConfig(BaseModel):
    """Idempotency gate settings."""

    backend: Literal["inmemory", "sqlite", "redis"] = "inmemory"
    ttl_seconds: float = DEFAULT_IDEMPOTENCY_TTL
    max_cache_size: int = DEFAULT_MAX_CACHE_SIZE
    eviction_fraction: float = DEFAULT_EVICTION_FRACTION
    enable_auto_cleanup: bool = False
    cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL
    key_locking: bool = False
    sqlite_path: str = "actflow_idempotency.db"
    redis: RedisConfig = RedisConfig()


class RetryPolicyOverride(BaseModel):
    """Partial retry policy; unset fields keep the platform default."""

    max_retries: Optional[int] = None
    base_delay: Optional[float] = None
    max_delay: Optional[float] = None
    backoff: Optional[Literal["exponential", "linear", "fixed", "fibonacci"]] = None
    multiplier: Optional[float] = None
    jitter: Optional[float] = None
    timeout: Optional[float] = None
    refresh_auth_on_error: Optional[bool] = None


class CircuitBreakerConfig(BaseModel):
    """Per-target circuit breaker settings. Disabled unless ``enabled`` is set."""

    enabled: bool = False
    failure_threshold: int = DEFAULT_BREAKER_FAILURE_THRESHOLD
    failure_window: float = DEFAULT_BREAKER_FAILURE_WINDOW
    reset_timeout: float = DEFAULT_BREAKER_RESET_TIMEOUT
    success_threshold: int = DEFAULT_BREAKER_SUCCESS_THRESHOLD


class RetryConfig(BaseModel):
    """Retry engine settings."""

    policies: Dict[str, RetryPolicyOverride] = Field(default_factory=dict)
    rate_limit_buffer: float = DEFAULT_RATE_LIMIT_BUFFER
    max_total_retry_time: float = DEFAULT_MAX_TOTAL_RETRY_TIME
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig()


class RollbackConfig(BaseModel):
    """Rollback coordinator settings."""

    timeout_per_action: float = DEFAULT_ROLLBACK_TIMEOUT
    require_confirmation: bool = False
    stop_on_failure: bool = False
    skip_non_reversible: bool = False
    history_limit: int = DEFAULT_HISTORY_LIMIT
    undo_rules: List[Dict[str, Any]] = Field(default_factory=list)


class DispatcherConfig(BaseModel):
    """Action dispatcher settings."""

    backend: Literal["inmemory", "http"] = "inmemory"
    base_url: str = "http://localhost:8080"
    timeout: float = 30.0
    headers: Dict[str, str] = Field(default_factory=dict)


class ActflowConfig(BaseModel):
    """Top-level configuration model."""

    idempotency: IdempotencyConfig = IdempotencyConfig()
    retry: RetryConfig = RetryConfig()
    rollback: RollbackConfig = RollbackConfig()
    dispatcher: DispatcherConfig = DispatcherConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> ActflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ACTFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("ACTFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ActflowConfig(**data)
    else:
        config = ActflowConfig()

    env_db_url = os.getenv("ACTFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
