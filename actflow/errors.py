"""Error taxonomy for action execution.

Dispatchers raise :class:`ActionError` (or one of its subclasses) when a
remote call fails. The retry engine classifies whatever it receives, retries
within its policy, and finally raises :class:`RetryExhaustedError` or
:class:`RetryCancelledError`. The workflow engine wraps those in
:class:`WorkflowStepError` and records them on the result instead of raising.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ActflowError(Exception):
    """Base class for all errors raised by actflow."""


class ActionError(ActflowError):
    """Structured failure reported by an action dispatcher.

    ``status`` carries an HTTP-like status code when the remote system
    returned one, ``code`` a symbolic error code (``ETIMEDOUT``,
    ``rate_limited`` ...). ``retry_after`` is in seconds and ``reset_at`` is a
    unix timestamp; both are rate-limit hints.
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        is_retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
        reset_at: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.is_retryable = is_retryable
        self.retry_after = retry_after
        self.reset_at = reset_at
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.details = details

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, status={self.status}, "
            f"code={self.code!r})"
        )


class TransientError(ActionError):
    """Failure that is expected to go away on its own (network, timeouts)."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("is_retryable", True)
        super().__init__(message, **kwargs)


class RateLimitError(TransientError):
    """The remote system throttled the call."""

    def __init__(self, message: str = "Rate limit exceeded", **kwargs: Any) -> None:
        kwargs.setdefault("status", 429)
        super().__init__(message, **kwargs)


class AuthError(ActionError):
    """Credentials were rejected; one refresh-and-retry cycle is allowed."""

    def __init__(self, message: str = "Authentication failed", **kwargs: Any) -> None:
        kwargs.setdefault("status", 401)
        super().__init__(message, **kwargs)


class PermanentError(ActionError):
    """Failure that retrying will not fix (validation, conflict)."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("is_retryable", False)
        super().__init__(message, **kwargs)


class CircuitOpenError(ActionError):
    """The circuit for a target is open; the call was rejected without being made."""

    def __init__(self, target: str, retry_at: Optional[float] = None) -> None:
        super().__init__(
            f"Circuit breaker is open for {target}", code="circuit_open", is_retryable=False
        )
        self.target = target
        self.retry_at = retry_at


class RetryExhaustedError(PermanentError):
    """Raised by the retry engine once it stops retrying a call."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException | None,
        error_type: str,
        platform: str = "generic",
        operation: str = "",
    ) -> None:
        status = getattr(last_error, "status", None)
        super().__init__(message, status=status if isinstance(status, int) else None)
        self.attempts = attempts
        self.last_error = last_error
        self.error_type = error_type
        self.platform = platform
        self.operation = operation


class RetryCancelledError(ActflowError):
    """The caller cancelled a retry loop before it finished."""

    def __init__(self, message: str = "Retry cancelled", *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class WorkflowStepError(ActflowError):
    """A workflow step failed; wraps the classified cause."""

    def __init__(self, step_id: str, cause: BaseException, error_type: str = "unknown") -> None:
        super().__init__(f"Step '{step_id}' failed: {cause}")
        self.step_id = step_id
        self.cause = cause
        self.error_type = error_type


class WorkflowValidationError(ActflowError, ValueError):
    """The workflow definition is structurally invalid."""

    def __init__(self, errors: List[str]) -> None:
        super().__init__("Invalid workflow definition: " + "; ".join(errors))
        self.errors = errors


__all__ = [
    "ActflowError",
    "ActionError",
    "TransientError",
    "RateLimitError",
    "AuthError",
    "PermanentError",
    "CircuitOpenError",
    "RetryExhaustedError",
    "RetryCancelledError",
    "WorkflowStepError",
    "WorkflowValidationError",
]
