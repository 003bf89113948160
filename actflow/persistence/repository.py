"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from typing import Any, Protocol

from .models import ExecutionInstance


class WorkflowRepository(Protocol):
    """Protocol for execution state persistence backends."""

    async def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        definition: dict,
        context: dict | None = None,
    ) -> None:
        """Persist initial execution state."""

    async def mark_step_started(self, execution_id: str, step_id: str) -> None:
        """Record start of a step."""

    async def mark_step_completed(
        self,
        execution_id: str,
        step_id: str,
        status: str,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        """Record the terminal state of a step."""

    async def update_context(self, execution_id: str, context: dict) -> None:
        """Persist workflow context updates."""

    async def update_status(self, execution_id: str, status: str) -> None:
        """Persist an execution status transition."""

    async def get_execution(self, execution_id: str) -> ExecutionInstance | None:
        """Retrieve the execution by id."""

    async def list_executions(self) -> list[ExecutionInstance]:
        """Return all persisted executions."""
