"""HTTP dispatcher that forwards actions to an integration gateway."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..errors import ActionError, AuthError, PermanentError, RateLimitError, TransientError
from .base import BaseDispatcher

logger = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)
    return str(body)


def error_from_response(response: httpx.Response, action_type: str, target: str) -> ActionError:
    """Map a non-2xx response to the matching :class:`ActionError` subclass."""
    status = response.status_code
    message = f"{target}.{action_type} failed with HTTP {status}: {_error_message(response)}"
    headers = dict(response.headers)
    if status == 429:
        return RateLimitError(message, headers=headers)
    if status in (401, 403):
        return AuthError(message, status=status, headers=headers)
    if status >= 500:
        return TransientError(message, status=status, headers=headers)
    if status in (400, 409, 422):
        return PermanentError(message, status=status, headers=headers)
    return ActionError(message, status=status, headers=headers)


class HttpDispatcher(BaseDispatcher):
    """POST each action to ``{base_url}/actions/{target}/{action_type}``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._client = client

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
            )

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def execute(self, action_type: str, target: str, params: Dict[str, Any]) -> Any:
        if self._client is None:
            await self.connect()

        path = f"/actions/{target}/{action_type}"
        try:
            response = await self._client.post(path, json=params)
        except httpx.TimeoutException as exc:
            raise TransientError(
                f"{target}.{action_type} timed out: {exc}", code="ETIMEDOUT"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientError(
                f"{target}.{action_type} connection error: {exc}", code="ECONNRESET"
            ) from exc

        if response.is_error:
            raise error_from_response(response, action_type, target)

        logger.debug(f"{target}.{action_type} succeeded with HTTP {response.status_code}")
        if not response.content:
            return {}
        return response.json()
