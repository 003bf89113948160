"""Classification of failures from remote calls."""

from __future__ import annotations

import asyncio
import time
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Mapping, NamedTuple, Optional

import httpx

from ..errors import (
    AuthError,
    PermanentError,
    RateLimitError,
    RetryCancelledError,
    RetryExhaustedError,
    TransientError,
)


class ErrorType(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    SERVER_ERROR = "server_error"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


DEFAULT_RETRYABLE_TYPES = frozenset(
    {ErrorType.NETWORK, ErrorType.RATE_LIMIT, ErrorType.SERVER_ERROR}
)

NETWORK_CODES = frozenset(
    {"ETIMEDOUT", "ECONNRESET", "ECONNREFUSED", "ENOTFOUND", "EAI_AGAIN", "EPIPE", "ENETUNREACH"}
)

_MESSAGE_HINTS: tuple[tuple[ErrorType, tuple[str, ...]], ...] = (
    (ErrorType.RATE_LIMIT, ("rate limit", "too many requests", "quota exceeded", "throttl")),
    (ErrorType.AUTH, ("unauthorized", "forbidden", "invalid token", "token expired", "authentication")),
    (ErrorType.NETWORK, ("timeout", "timed out", "connection reset", "connection refused", "network", "socket hang up")),
    (ErrorType.CONFLICT, ("conflict", "already exists")),
    (ErrorType.VALIDATION, ("invalid", "validation", "bad request", "malformed")),
)


def status_of(err: BaseException) -> Optional[int]:
    """Best-effort HTTP status carried by ``err``."""
    for attr in ("status", "status_code"):
        value = getattr(err, attr, None)
        if isinstance(value, int):
            return value
    code = getattr(err, "code", None)
    if isinstance(code, int) and 100 <= code < 600:
        return code
    response = getattr(err, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def classify_status(status: int) -> ErrorType:
    if status == 429:
        return ErrorType.RATE_LIMIT
    if status in (401, 403):
        return ErrorType.AUTH
    if status >= 500:
        return ErrorType.SERVER_ERROR
    if status == 409:
        return ErrorType.CONFLICT
    if status in (400, 422):
        return ErrorType.VALIDATION
    return ErrorType.UNKNOWN


def classify_error(err: BaseException) -> ErrorType:
    """Map any exception to an :class:`ErrorType`.

    HTTP status wins when present; otherwise the exception type, a symbolic
    error code and finally the message text are consulted.
    """
    if isinstance(err, RetryExhaustedError):
        try:
            return ErrorType(err.error_type)
        except ValueError:
            return ErrorType.UNKNOWN

    status = status_of(err)
    if status is not None:
        kind = classify_status(status)
        if kind is not ErrorType.UNKNOWN:
            return kind

    if isinstance(err, RateLimitError):
        return ErrorType.RATE_LIMIT
    if isinstance(err, AuthError):
        return ErrorType.AUTH
    if isinstance(err, (TimeoutError, asyncio.TimeoutError, ConnectionError, httpx.TransportError)):
        return ErrorType.NETWORK
    if isinstance(err, TransientError):
        return ErrorType.NETWORK

    code = getattr(err, "code", None)
    if isinstance(code, str) and code.upper() in NETWORK_CODES:
        return ErrorType.NETWORK

    message = str(err).lower()
    for kind, hints in _MESSAGE_HINTS:
        if any(hint in message for hint in hints):
            return kind

    if isinstance(err, PermanentError):
        return ErrorType.VALIDATION
    return ErrorType.UNKNOWN


def is_retryable(
    err: BaseException,
    error_type: Optional[ErrorType] = None,
    retryable_types: frozenset = DEFAULT_RETRYABLE_TYPES,
) -> bool:
    """Whether another attempt could succeed.

    Validation and conflict errors are never retried. Otherwise an explicit
    ``is_retryable`` hint from the dispatcher wins over the policy's set of
    retryable types. Auth errors are handled separately by the retry engine.
    """
    if isinstance(err, RetryCancelledError):
        return False
    error_type = error_type or classify_error(err)
    if error_type in (ErrorType.VALIDATION, ErrorType.CONFLICT):
        return False
    hint = getattr(err, "is_retryable", None)
    if isinstance(hint, bool):
        return hint
    return error_type in retryable_types


class RateLimitInfo(NamedTuple):
    retry_after: Optional[float]  # seconds to wait
    reset_at: Optional[float]  # unix timestamp

    def wait_seconds(self, now: Optional[float] = None) -> Optional[float]:
        now = time.time() if now is None else now
        waits = []
        if self.retry_after is not None:
            waits.append(self.retry_after)
        if self.reset_at is not None:
            waits.append(self.reset_at - now)
        if not waits:
            return None
        return max(0.0, max(waits))


def _parse_retry_after(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        pass
    try:
        return parsedate_to_datetime(str(value)).timestamp() - time.time()
    except (TypeError, ValueError):
        return None


def _float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _headers_of(err: BaseException) -> Mapping[str, Any]:
    headers = getattr(err, "headers", None)
    if headers is None:
        response = getattr(err, "response", None)
        headers = getattr(response, "headers", None)
    if not headers:
        return {}
    return {str(k).lower(): v for k, v in dict(headers).items()}


def extract_rate_limit_info(err: BaseException) -> RateLimitInfo:
    """Read a reset hint from an error's attributes or response headers."""
    headers = _headers_of(err)
    retry_after = _float(getattr(err, "retry_after", None))
    if retry_after is None:
        retry_after = _parse_retry_after(headers.get("retry-after"))
    reset_at = _float(getattr(err, "reset_at", None))
    if reset_at is None:
        reset_at = _float(getattr(err, "reset_time", None))
    if reset_at is None:
        reset_at = _float(headers.get("x-ratelimit-reset"))
    return RateLimitInfo(retry_after=retry_after, reset_at=reset_at)
