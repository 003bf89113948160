"""In-memory dispatcher for testing and local runs."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union

from .base import BaseDispatcher

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]


class InMemoryDispatcher(BaseDispatcher):
    """Dispatch actions to registered Python callables.

    Unregistered actions succeed with a generated ``id`` so that workflows can
    be exercised end to end without real integrations. Failures can be
    scripted with :meth:`fail_next`.
    """

    def __init__(self, undo_rules: Optional[Sequence[Any]] = None) -> None:
        self._handlers: Dict[Tuple[str, str], Handler] = {}
        self._failures: Dict[Tuple[str, str], Deque[BaseException]] = defaultdict(deque)
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        if undo_rules is not None:
            self.undo_rules = list(undo_rules)

    def register(self, action_type: str, target: str, handler: Handler) -> None:
        """Route ``action_type`` on ``target`` to ``handler``."""
        self._handlers[(target, action_type)] = handler

    def fail_next(
        self, action_type: str, target: str, error: BaseException, times: int = 1
    ) -> None:
        """Make the next ``times`` calls of this action raise ``error``."""
        queue = self._failures[(target, action_type)]
        for _ in range(times):
            queue.append(error)

    def calls_for(self, action_type: str, target: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            params
            for action, tgt, params in self.calls
            if action == action_type and (target is None or tgt == target)
        ]

    async def execute(self, action_type: str, target: str, params: Dict[str, Any]) -> Any:
        key = (target, action_type)
        async with self._lock:
            self.calls.append((action_type, target, dict(params)))
            scripted = self._failures[key].popleft() if self._failures[key] else None
            call_number = next(self._ids)

        if scripted is not None:
            logger.debug(f"Scripted failure for {target}.{action_type}: {scripted!r}")
            raise scripted

        handler = self._handlers.get(key)
        if handler is None:
            return {"id": f"{target}-{action_type}-{call_number}", "success": True}

        result = handler(params)
        if inspect.isawaitable(result):
            result = await result
        return result
