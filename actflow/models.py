"""Execution state for workflow runs."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .rollback.models import ManualIntervention, RollbackResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.ROLLED_BACK}
)


class StepResult(BaseModel):
    """Outcome of a single step."""

    step_id: str
    status: StepStatus
    result: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    cached: bool = False
    idempotency_key: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return None


class WorkflowProgress(BaseModel):
    workflow_id: str
    execution_id: str
    completed_steps: int = 0
    total_steps: int = 0
    failed_steps: int = 0
    current_step: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.PENDING

    @property
    def percent_complete(self) -> float:
        if not self.total_steps:
            return 100.0
        return round(100.0 * self.completed_steps / self.total_steps, 1)


class WorkflowExecutionRecord(BaseModel):
    """State of one ``execute_workflow`` call."""

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    step_results: Dict[str, StepResult] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def record_step(self, result: StepResult) -> None:
        """Store a step's terminal result. Each step is recorded once."""
        if result.step_id in self.step_results:
            raise ValueError(
                f"Step {result.step_id} already has a recorded result in execution {self.execution_id}"
            )
        self.step_results[result.step_id] = result

    def transition(self, status: WorkflowStatus) -> None:
        if self.status in TERMINAL_STATUSES:
            raise ValueError(
                f"Execution {self.execution_id} is already {self.status.value}"
            )
        self.status = status
        if status == WorkflowStatus.RUNNING and self.started_at is None:
            self.started_at = _utcnow()
        if status in TERMINAL_STATUSES:
            self.ended_at = _utcnow()

    def count(self, status: StepStatus) -> int:
        return sum(1 for r in self.step_results.values() if r.status == status)


class WorkflowResult(BaseModel):
    """Everything a caller needs to know about a finished run."""

    workflow_id: str
    execution_id: str
    success: bool
    status: WorkflowStatus
    error: Optional[str] = None
    failed_step: Optional[str] = None
    rollback_performed: bool = False
    rollback: Optional[RollbackResult] = None
    manual_steps: List[ManualIntervention] = Field(default_factory=list)
    step_results: Dict[str, StepResult] = Field(default_factory=dict)
    progress: Optional[WorkflowProgress] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return None

    def step_status(self, step_id: str) -> Optional[StepStatus]:
        result = self.step_results.get(step_id)
        return result.status if result else None
