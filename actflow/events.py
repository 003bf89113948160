"""Lifecycle events published by the workflow engine."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Dict, List, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

WORKFLOW_STARTED = "workflow.started"
WORKFLOW_COMPLETED = "workflow.completed"
WORKFLOW_FAILED = "workflow.failed"
WORKFLOW_PROGRESS = "workflow.progress"
STEP_STARTED = "step.started"
STEP_COMPLETED = "step.completed"
STEP_FAILED = "step.failed"
STEP_BLOCKED = "step.blocked"
ROLLBACK_STARTED = "rollback.started"
ROLLBACK_COMPLETED = "rollback.completed"

# Subscribing to this name receives every event.
ALL_EVENTS = "*"


class Event(BaseModel):
    """Envelope for a lifecycle event."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    workflow_id: str
    execution_id: str
    step_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = Field(default_factory=dict)


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus(Protocol):
    async def publish(self, event: Event) -> None:
        """Publish an event."""

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        """Register an async handler for an event name."""


class InMemoryEventBus(EventBus):
    """Deliver events to in-process handlers.

    A failing handler is logged and skipped; it never affects the workflow
    that published the event.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {}

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: Event) -> None:
        handlers = self._handlers.get(event.name, []) + self._handlers.get(ALL_EVENTS, [])
        if not handlers:
            return

        logger.debug(
            f"Publishing {event.name} for execution {event.execution_id} to {len(handlers)} handler(s)"
        )
        for handler in handlers:
            try:
                await handler(event)
            except Exception as exc:
                logger.error(
                    f"Event handler {handler!r} failed for {event.name}: {exc}",
                    exc_info=True,
                )
