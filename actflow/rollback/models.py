"""Data models for the rollback ledger."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ..constants import DEFAULT_ROLLBACK_TIMEOUT


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reversibility(str, Enum):
    REVERSIBLE = "reversible"
    PARTIALLY_REVERSIBLE = "partially_reversible"
    NON_REVERSIBLE = "non_reversible"
    CONFIRMATION_REQUIRED = "confirmation_required"


class RollbackStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    SKIPPED = "skipped"
    MANUAL_REQUIRED = "manual_required"


# Entries in these states are never processed again.
SETTLED_STATUSES = frozenset(
    {RollbackStatus.ROLLED_BACK, RollbackStatus.SKIPPED, RollbackStatus.MANUAL_REQUIRED}
)


class LedgerStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    PARTIALLY_ROLLED_BACK = "partially_rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class UndoOperation(BaseModel):
    """Concrete compensating call for one executed action."""

    action: str
    target: str
    params: Dict[str, Any] = Field(default_factory=dict)
    requires_confirmation: bool = False
    lossy: bool = False


class ExecutedAction(BaseModel):
    """One successfully executed action in a workflow ledger."""

    action_id: str = Field(default_factory=lambda: f"action-{uuid.uuid4().hex[:12]}")
    workflow_id: str
    step_id: Optional[str] = None
    action_type: str
    target: str
    original_params: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    idempotency_key: Optional[str] = None
    reversibility: Reversibility
    executed_at: datetime = Field(default_factory=_utcnow)
    rollback_status: RollbackStatus = RollbackStatus.PENDING
    undo: Optional[UndoOperation] = None
    rollback_metadata: Dict[str, Any] = Field(default_factory=dict)


class ManualIntervention(BaseModel):
    """What a person has to do because an action could not be undone."""

    action_id: str
    action_type: str
    target: str
    executed_at: datetime
    reason: str
    instructions: List[str] = Field(default_factory=list)

    def describe(self) -> str:
        lines = [
            f"Action: {self.action_type} ({self.action_id})",
            f"Target: {self.target}",
            f"Executed at: {self.executed_at.isoformat()}",
            self.reason,
        ]
        lines.extend(self.instructions)
        return "\n".join(lines)


class RollbackFailure(BaseModel):
    """A failed undo attempt. Recorded on the result, never raised."""

    action_id: str
    action_type: str
    target: str
    error: str
    error_type: str = "unknown"
    attempts: int = 0
    failed_at: datetime = Field(default_factory=_utcnow)


class RollbackOptions(BaseModel):
    max_actions: Optional[int] = None
    require_confirmation: bool = False
    confirmed_actions: Set[str] = Field(default_factory=set)
    stop_on_failure: bool = False
    timeout_per_action: float = DEFAULT_ROLLBACK_TIMEOUT
    skip_non_reversible: bool = False


class RollbackResult(BaseModel):
    """Outcome of a rollback or partial rollback."""

    workflow_id: str
    success: bool = False
    ran: bool = True
    rolled_back_actions: List[str] = Field(default_factory=list)
    failed_actions: List[str] = Field(default_factory=list)
    manual_intervention_actions: List[str] = Field(default_factory=list)
    skipped_actions: List[str] = Field(default_factory=list)
    lossy_actions: List[str] = Field(default_factory=list)
    manual_steps: List[ManualIntervention] = Field(default_factory=list)
    failures: List[RollbackFailure] = Field(default_factory=list)
    duration: float = 0.0
    error: Optional[str] = None

    @property
    def rolled_back_count(self) -> int:
        return len(self.rolled_back_actions)

    @property
    def failed_count(self) -> int:
        return len(self.failed_actions)

    @property
    def manual_count(self) -> int:
        return len(self.manual_intervention_actions)


class RollbackPlan(BaseModel):
    """Dry-run classification of a ledger."""

    workflow_id: str
    can_rollback: bool
    total_actions: int = 0
    reversible_actions: int = 0
    partially_reversible_actions: int = 0
    non_reversible_actions: int = 0
    requires_confirmation: int = 0
    already_settled: int = 0
    estimated_duration: float = 0.0
    warnings: List[str] = Field(default_factory=list)


class WorkflowLedger(BaseModel):
    """Append-only record of the actions one workflow execution performed."""

    workflow_id: str
    workflow_name: str = ""
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    status: LedgerStatus = LedgerStatus.ACTIVE
    actions: List[ExecutedAction] = Field(default_factory=list)
    manual_steps: List[ManualIntervention] = Field(default_factory=list)
    rollback_results: List[RollbackResult] = Field(default_factory=list)
