"""Rollback coordinator and ledger models."""

from .coordinator import RollbackCoordinator
from .manual import manual_intervention_for
from .models import (
    ExecutedAction,
    LedgerStatus,
    ManualIntervention,
    Reversibility,
    RollbackFailure,
    RollbackOptions,
    RollbackPlan,
    RollbackResult,
    RollbackStatus,
    UndoOperation,
    WorkflowLedger,
)
from .reversibility import classify_reversibility
from .undo import DEFAULT_UNDO_RULES, UndoRule, build_undo

__all__ = [
    "DEFAULT_UNDO_RULES",
    "ExecutedAction",
    "LedgerStatus",
    "ManualIntervention",
    "Reversibility",
    "RollbackCoordinator",
    "RollbackFailure",
    "RollbackOptions",
    "RollbackPlan",
    "RollbackResult",
    "RollbackStatus",
    "UndoOperation",
    "UndoRule",
    "WorkflowLedger",
    "build_undo",
    "classify_reversibility",
    "manual_intervention_for",
]
