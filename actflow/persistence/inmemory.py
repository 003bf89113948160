"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from ..constants import DEFAULT_MAX_EXECUTIONS
from .models import ExecutionInstance, StepRecord
from .repository import WorkflowRepository


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Only the newest ``max_executions``
    executions are kept; creating one more drops the oldest.
    """

    def __init__(self, max_executions: int = DEFAULT_MAX_EXECUTIONS) -> None:
        if max_executions < 1:
            raise ValueError("max_executions must be at least 1")
        self.max_executions = max_executions
        self._executions: Dict[str, ExecutionInstance] = {}
        self._step_id = 0

    # ------------------------------------------------------------------
    async def create_execution(
        self,
        execution_id: str,
        workflow_id: str,
        definition: dict,
        context: dict | None = None,
    ) -> None:
        self._executions.pop(execution_id, None)
        while len(self._executions) >= self.max_executions:
            del self._executions[next(iter(self._executions))]
        self._executions[execution_id] = ExecutionInstance(
            execution_id=execution_id,
            workflow_id=workflow_id,
            definition=definition,
            context=context or {},
            status="pending",
            steps=[],
        )

    async def mark_step_started(self, execution_id: str, step_id: str) -> None:
        ex = self._executions.get(execution_id)
        if not ex:
            return
        # ignore duplicate starts
        for step in ex.steps:
            if step.step_id == step_id:
                return
        self._step_id += 1
        ex.steps.append(
            StepRecord(
                id=self._step_id,
                execution_id=execution_id,
                step_id=step_id,
                started_at=_now(),
            )
        )

    async def mark_step_completed(
        self,
        execution_id: str,
        step_id: str,
        status: str,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        ex = self._executions.get(execution_id)
        if not ex:
            return
        for step in ex.steps:
            if step.step_id == step_id:
                if step.completed_at is None:
                    step.completed_at = _now()
                    step.status = status
                    step.output = output
                    step.error = error
                return
        # steps that never started (blocked, skipped) get a closed record
        self._step_id += 1
        ex.steps.append(
            StepRecord(
                id=self._step_id,
                execution_id=execution_id,
                step_id=step_id,
                completed_at=_now(),
                status=status,
                output=output,
                error=error,
            )
        )

    async def update_context(self, execution_id: str, context: dict) -> None:
        ex = self._executions.get(execution_id)
        if ex:
            ex.context = context

    async def update_status(self, execution_id: str, status: str) -> None:
        ex = self._executions.get(execution_id)
        if ex:
            ex.status = status

    async def get_execution(self, execution_id: str) -> ExecutionInstance | None:
        return self._executions.get(execution_id)

    async def list_executions(self) -> list[ExecutionInstance]:
        return list(self._executions.values())
