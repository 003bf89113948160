"""Shared defaults for actflow."""

from __future__ import annotations

# Idempotency
DEFAULT_IDEMPOTENCY_TTL = 24 * 60 * 60  # seconds
DEFAULT_MAX_CACHE_SIZE = 10_000
DEFAULT_EVICTION_FRACTION = 0.2
DEFAULT_CLEANUP_INTERVAL = 60 * 60  # seconds
NO_SIGNAL = "no-signal"
KEY_HASH_LENGTH = 16

# Retry
DEFAULT_RATE_LIMIT_BUFFER = 1.0  # seconds added on top of a reset hint
DEFAULT_MAX_TOTAL_RETRY_TIME = 5 * 60  # seconds

# Circuit breaker
DEFAULT_BREAKER_FAILURE_THRESHOLD = 5  # failures within the window that open the circuit
DEFAULT_BREAKER_FAILURE_WINDOW = 60.0  # seconds
DEFAULT_BREAKER_RESET_TIMEOUT = 30.0  # seconds open before a trial call
DEFAULT_BREAKER_SUCCESS_THRESHOLD = 2  # trial successes that close the circuit

# Per-platform retry defaults.
PLATFORM_RETRY_DEFAULTS: dict[str, dict] = {
    "notion": {
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 4.0,
        "multiplier": 2.0,
        "jitter": 0.1,
        "timeout": 10.0,
        "refresh_auth_on_error": True,
    },
    "trello": {
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 4.0,
        "multiplier": 2.0,
        "jitter": 0.1,
        "timeout": 10.0,
        "refresh_auth_on_error": True,
    },
    "asana": {
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 4.0,
        "multiplier": 2.0,
        "jitter": 0.1,
        "timeout": 10.0,
        "refresh_auth_on_error": True,
    },
    "slack": {
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 5.0,
        "multiplier": 2.0,
        "jitter": 0.1,
        "timeout": 15.0,
        "refresh_auth_on_error": False,
    },
    "gmail": {
        "max_retries": 5,
        "base_delay": 2.0,
        "max_delay": 32.0,
        "multiplier": 2.0,
        "jitter": 0.15,
        "timeout": 20.0,
        "refresh_auth_on_error": True,
    },
    "drive": {
        "max_retries": 5,
        "base_delay": 2.0,
        "max_delay": 32.0,
        "multiplier": 2.0,
        "jitter": 0.15,
        "timeout": 30.0,
        "refresh_auth_on_error": True,
    },
    "sheets": {
        "max_retries": 5,
        "base_delay": 2.0,
        "max_delay": 32.0,
        "multiplier": 2.0,
        "jitter": 0.15,
        "timeout": 20.0,
        "refresh_auth_on_error": True,
    },
    "generic": {
        "max_retries": 3,
        "base_delay": 1.0,
        "max_delay": 8.0,
        "multiplier": 2.0,
        "jitter": 0.1,
        "timeout": 10.0,
        "refresh_auth_on_error": False,
    },
}

# Rollback
DEFAULT_ROLLBACK_TIMEOUT = 30.0  # seconds per undo action
DEFAULT_HISTORY_LIMIT = 1000
ESTIMATED_SECONDS_PER_UNDO = 3.5

# Persistence
DEFAULT_MAX_EXECUTIONS = 1000  # in-memory repository keeps the newest executions only

# Static reversibility of known action types. Anything missing falls back to
# the prefix rules in ``actflow.rollback.reversibility``.
ACTION_REVERSIBILITY: dict[str, str] = {
    "create_task": "reversible",
    "create_card": "reversible",
    "create_page": "reversible",
    "create_folder": "reversible",
    "upload_file": "confirmation_required",
    "file_document": "confirmation_required",
    "append_data": "partially_reversible",
    "update_cell": "partially_reversible",
    "update_task": "partially_reversible",
    "move_file": "partially_reversible",
    "share_file": "partially_reversible",
    "send_notification": "non_reversible",
    "send_message": "non_reversible",
    "send_email": "non_reversible",
    "trigger_webhook": "non_reversible",
    "log_action": "non_reversible",
}
