"""Dispatcher factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ActflowConfig, load_config
from .base import BaseDispatcher
from .http import HttpDispatcher
from .inmemory import InMemoryDispatcher


def get_dispatcher(
    backend: Optional[str] = None, config: Optional[ActflowConfig] = None
) -> BaseDispatcher:
    """Factory function to get the configured dispatcher."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("ACTFLOW_DISPATCHER")
        or config.dispatcher.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryDispatcher()
    elif backend == "http":
        conf = config.dispatcher
        return HttpDispatcher(
            base_url=conf.base_url,
            timeout=conf.timeout,
            headers=conf.headers,
        )
    else:
        raise ValueError(f"Unsupported dispatcher backend: {backend}")


__all__ = ["BaseDispatcher", "HttpDispatcher", "InMemoryDispatcher", "get_dispatcher"]
