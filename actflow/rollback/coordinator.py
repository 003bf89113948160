"""Best-effort compensation of executed workflow actions."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence

from ..config import ActflowConfig
from ..constants import DEFAULT_HISTORY_LIMIT, ESTIMATED_SECONDS_PER_UNDO
from ..dispatchers.base import BaseDispatcher
from ..retry import RetryEngine, classify_error
from .manual import confirmation_needed_for, manual_intervention_for
from .models import (
    SETTLED_STATUSES,
    ExecutedAction,
    LedgerStatus,
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
from .undo import DEFAULT_UNDO_RULES, UndoRule, build_undo, combine_rules

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RollbackCoordinator:
    """Keeps one append-only ledger per workflow execution and undoes it.

    Ledgers are processed newest first. Undo calls go through the retry
    engine and the dispatcher. Nothing here raises for a failed undo: every
    outcome is reported on the returned :class:`RollbackResult`.
    """

    def __init__(
        self,
        dispatcher: Optional[BaseDispatcher] = None,
        retry_engine: Optional[RetryEngine] = None,
        *,
        undo_rules: Optional[Sequence[Any]] = None,
        reversibility_overrides: Optional[Mapping[str, str]] = None,
        default_options: Optional[RollbackOptions] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._dispatcher = dispatcher
        self._retry = retry_engine or RetryEngine()
        self._rules: List[UndoRule] = combine_rules(
            getattr(dispatcher, "undo_rules", None), undo_rules, DEFAULT_UNDO_RULES
        )
        self._reversibility_overrides = dict(reversibility_overrides or {})
        self.default_options = default_options or RollbackOptions()
        self._ledgers: Dict[str, WorkflowLedger] = {}
        self._history: Deque[WorkflowLedger] = deque(maxlen=history_limit)
        self._locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(
        cls,
        config: ActflowConfig,
        dispatcher: Optional[BaseDispatcher] = None,
        retry_engine: Optional[RetryEngine] = None,
    ) -> "RollbackCoordinator":
        conf = config.rollback
        return cls(
            dispatcher,
            retry_engine,
            undo_rules=conf.undo_rules,
            default_options=RollbackOptions(
                require_confirmation=conf.require_confirmation,
                stop_on_failure=conf.stop_on_failure,
                timeout_per_action=conf.timeout_per_action,
                skip_non_reversible=conf.skip_non_reversible,
            ),
            history_limit=conf.history_limit,
        )

    # ------------------------------------------------------------------
    # Ledger lifecycle
    def start_workflow(self, workflow_id: str, workflow_name: str = "") -> WorkflowLedger:
        if workflow_id in self._ledgers:
            return self._ledgers[workflow_id]
        ledger = WorkflowLedger(workflow_id=workflow_id, workflow_name=workflow_name)
        self._ledgers[workflow_id] = ledger
        self._locks[workflow_id] = asyncio.Lock()
        logger.debug(f"Started rollback ledger for {workflow_id}")
        return ledger

    def record_action(
        self,
        workflow_id: str,
        action_type: str,
        target: str,
        params: Dict[str, Any],
        result: Any,
        *,
        step_id: Optional[str] = None,
        undo: Optional[UndoOperation] = None,
        idempotency_key: Optional[str] = None,
    ) -> ExecutedAction:
        """Append a successfully executed action to the workflow's ledger.

        An explicit ``undo`` (from a step's rollback spec) takes precedence
        over the rule table and makes an otherwise non-reversible action
        reversible.
        """
        ledger = self._ledgers.get(workflow_id) or self.start_workflow(workflow_id)
        reversibility = classify_reversibility(action_type, self._reversibility_overrides)
        if undo is not None and reversibility is Reversibility.NON_REVERSIBLE:
            reversibility = Reversibility.REVERSIBLE

        action = ExecutedAction(
            workflow_id=workflow_id,
            step_id=step_id,
            action_type=action_type,
            target=target,
            original_params=dict(params),
            result=result,
            idempotency_key=idempotency_key,
            reversibility=reversibility,
        )
        if undo is not None:
            action.undo = undo.model_copy(
                update={"lossy": reversibility is Reversibility.PARTIALLY_REVERSIBLE}
            )
        elif reversibility is not Reversibility.NON_REVERSIBLE:
            action.undo = build_undo(action, self._rules)

        ledger.actions.append(action)
        logger.info(
            f"Recorded {target}.{action_type} ({reversibility.value}) for workflow {workflow_id}"
        )
        return action

    def complete_workflow(self, workflow_id: str) -> Optional[WorkflowLedger]:
        """Move the ledger to the audit history."""
        ledger = self._ledgers.pop(workflow_id, None)
        self._locks.pop(workflow_id, None)
        if ledger is None:
            return None
        ledger.completed_at = _utcnow()
        if ledger.status is LedgerStatus.ACTIVE:
            ledger.status = LedgerStatus.COMPLETED
        self._history.append(ledger)
        return ledger

    # ------------------------------------------------------------------
    # Rollback
    async def rollback(
        self, workflow_id: str, options: Optional[RollbackOptions] = None
    ) -> RollbackResult:
        """Undo the whole ledger of ``workflow_id`` newest first."""
        ledger = self._ledgers.get(workflow_id)
        if ledger is None:
            return self._not_found(workflow_id)
        options = options or self.default_options
        entries = list(ledger.actions)
        if options.max_actions is not None:
            entries = entries[-options.max_actions:] if options.max_actions > 0 else []
        logger.info(f"Rolling back workflow {workflow_id} ({len(entries)} action(s))")
        return await self._process(ledger, entries, options, partial=False)

    async def partial_rollback(
        self, workflow_id: str, count: int, options: Optional[RollbackOptions] = None
    ) -> RollbackResult:
        """Undo only the last ``count`` ledger entries."""
        ledger = self._ledgers.get(workflow_id)
        if ledger is None:
            return self._not_found(workflow_id)
        entries = ledger.actions[-count:] if count > 0 else []
        logger.info(f"Partially rolling back workflow {workflow_id} ({len(entries)} action(s))")
        return await self._process(ledger, entries, options or self.default_options, partial=True)

    def _not_found(self, workflow_id: str) -> RollbackResult:
        logger.error(f"No active ledger for workflow {workflow_id}")
        return RollbackResult(
            workflow_id=workflow_id,
            success=False,
            ran=False,
            error=f"Workflow {workflow_id} not found",
        )

    async def _process(
        self,
        ledger: WorkflowLedger,
        entries: List[ExecutedAction],
        options: RollbackOptions,
        partial: bool,
    ) -> RollbackResult:
        started = time.monotonic()
        result = RollbackResult(workflow_id=ledger.workflow_id)
        lock = self._locks.setdefault(ledger.workflow_id, asyncio.Lock())

        async with lock:
            previous_status = ledger.status
            ledger.status = LedgerStatus.ROLLING_BACK
            for action in reversed(entries):
                if action.rollback_status in SETTLED_STATUSES:
                    continue
                if not await self._process_action(action, ledger, options, result):
                    if options.stop_on_failure:
                        logger.warning("Stopping rollback after a failed undo")
                        break

            result.duration = time.monotonic() - started
            result.success = not result.failed_actions and not result.manual_intervention_actions
            if not result.success:
                result.error = "Some actions failed to roll back or require manual intervention"
            ledger.rollback_results.append(result)

            if partial:
                ledger.status = previous_status
            elif result.success:
                ledger.status = LedgerStatus.ROLLED_BACK
            elif result.rolled_back_actions or result.manual_intervention_actions or result.skipped_actions:
                ledger.status = LedgerStatus.PARTIALLY_ROLLED_BACK
            else:
                ledger.status = LedgerStatus.ROLLBACK_FAILED

        logger.info(
            f"Rollback of {ledger.workflow_id}: {result.rolled_back_count} rolled back, "
            f"{result.failed_count} failed, {result.manual_count} manual "
            f"in {result.duration:.2f}s"
        )
        return result

    async def _process_action(
        self,
        action: ExecutedAction,
        ledger: WorkflowLedger,
        options: RollbackOptions,
        result: RollbackResult,
    ) -> bool:
        """Handle one ledger entry; return ``False`` when its undo failed."""
        if action.reversibility is Reversibility.NON_REVERSIBLE:
            if options.skip_non_reversible:
                action.rollback_status = RollbackStatus.SKIPPED
                result.skipped_actions.append(action.action_id)
                logger.info(f"Skipped non-reversible action {action.action_id}")
                return True
            self._require_manual(action, ledger, result, manual_intervention_for(action))
            return True

        needs_confirmation = action.reversibility is Reversibility.CONFIRMATION_REQUIRED or (
            action.undo is not None and action.undo.requires_confirmation
        )
        if (
            needs_confirmation
            and options.require_confirmation
            and action.action_id not in options.confirmed_actions
        ):
            self._require_manual(action, ledger, result, confirmation_needed_for(action))
            return True

        undo = action.undo
        if undo is None:
            self._fail(action, result, f"Cannot generate undo operation for {action.action_type}")
            return False
        if self._dispatcher is None:
            self._fail(action, result, "No dispatcher available to run undo operations")
            return False

        action.rollback_status = RollbackStatus.IN_PROGRESS
        try:
            outcome = await asyncio.wait_for(
                self._run_undo(undo), timeout=options.timeout_per_action
            )
        except asyncio.TimeoutError:
            self._fail(
                action,
                result,
                f"Rollback timed out after {options.timeout_per_action}s",
                error_type="network",
            )
            return False
        except Exception as exc:
            self._fail(
                action,
                result,
                str(exc),
                error_type=classify_error(exc).value,
                attempts=getattr(exc, "attempts", 0),
            )
            return False

        action.rollback_status = RollbackStatus.ROLLED_BACK
        action.rollback_metadata = {
            "rolled_back_at": _utcnow().isoformat(),
            "undo_action": undo.action,
            "rollback_result": outcome,
            "lossy": undo.lossy,
        }
        result.rolled_back_actions.append(action.action_id)
        if undo.lossy:
            result.lossy_actions.append(action.action_id)
        logger.info(
            f"Rolled back {action.target}.{action.action_type} ({action.action_id}) "
            f"via {undo.action}" + (" (lossy)" if undo.lossy else "")
        )
        return True

    async def _run_undo(self, undo: UndoOperation) -> Any:
        return await self._retry.retry(
            lambda: self._dispatcher.execute(undo.action, undo.target, undo.params),
            platform=undo.target,
            operation=f"undo:{undo.action}",
        )

    def _require_manual(self, action, ledger, result, intervention) -> None:
        action.rollback_status = RollbackStatus.MANUAL_REQUIRED
        result.manual_intervention_actions.append(action.action_id)
        result.manual_steps.append(intervention)
        ledger.manual_steps.append(intervention)
        logger.warning(
            f"Action {action.action_id} ({action.action_type}) requires manual intervention"
        )

    def _fail(
        self,
        action: ExecutedAction,
        result: RollbackResult,
        message: str,
        error_type: str = "unknown",
        attempts: int = 0,
    ) -> None:
        action.rollback_status = RollbackStatus.FAILED
        action.rollback_metadata = {"rolled_back_at": _utcnow().isoformat(), "rollback_error": message}
        result.failed_actions.append(action.action_id)
        result.failures.append(
            RollbackFailure(
                action_id=action.action_id,
                action_type=action.action_type,
                target=action.target,
                error=message,
                error_type=error_type,
                attempts=attempts,
            )
        )
        logger.error(f"Failed to roll back action {action.action_id}: {message}")

    # ------------------------------------------------------------------
    # Dry run
    def validate_workflow_rollback(self, workflow_id: str) -> RollbackPlan:
        ledger = self._ledgers.get(workflow_id)
        if ledger is None:
            return RollbackPlan(
                workflow_id=workflow_id,
                can_rollback=False,
                warnings=[f"Workflow {workflow_id} not found"],
            )

        pending = [a for a in ledger.actions if a.rollback_status not in SETTLED_STATUSES]
        counts = {r: 0 for r in Reversibility}
        for action in pending:
            counts[action.reversibility] += 1

        undoable = counts[Reversibility.REVERSIBLE] + counts[Reversibility.PARTIALLY_REVERSIBLE]
        warnings: List[str] = []
        if counts[Reversibility.NON_REVERSIBLE]:
            warnings.append(
                f"{counts[Reversibility.NON_REVERSIBLE]} action(s) cannot be automatically "
                "reversed and will require manual intervention"
            )
        if counts[Reversibility.CONFIRMATION_REQUIRED]:
            warnings.append(
                f"{counts[Reversibility.CONFIRMATION_REQUIRED]} action(s) require confirmation "
                "before rollback (destructive operations)"
            )
        if counts[Reversibility.PARTIALLY_REVERSIBLE]:
            warnings.append(
                f"{counts[Reversibility.PARTIALLY_REVERSIBLE]} action(s) can only be partially reversed"
            )
        missing_undo = [
            a.action_id
            for a in pending
            if a.reversibility is not Reversibility.NON_REVERSIBLE and a.undo is None
        ]
        if missing_undo:
            warnings.append(f"No undo operation known for: {', '.join(missing_undo)}")
        if not ledger.actions:
            warnings.append("No actions have been executed in this workflow")

        return RollbackPlan(
            workflow_id=workflow_id,
            can_rollback=bool(pending),
            total_actions=len(ledger.actions),
            reversible_actions=counts[Reversibility.REVERSIBLE],
            partially_reversible_actions=counts[Reversibility.PARTIALLY_REVERSIBLE],
            non_reversible_actions=counts[Reversibility.NON_REVERSIBLE],
            requires_confirmation=counts[Reversibility.CONFIRMATION_REQUIRED],
            already_settled=len(ledger.actions) - len(pending),
            estimated_duration=undoable * ESTIMATED_SECONDS_PER_UNDO,
            warnings=warnings,
        )

    def estimate_rollback_duration(self, workflow_id: str) -> Optional[float]:
        if workflow_id not in self._ledgers:
            return None
        return self.validate_workflow_rollback(workflow_id).estimated_duration

    # ------------------------------------------------------------------
    # Queries
    def get_ledger(self, workflow_id: str) -> Optional[WorkflowLedger]:
        ledger = self._ledgers.get(workflow_id)
        if ledger is not None:
            return ledger
        for past in reversed(self._history):
            if past.workflow_id == workflow_id:
                return past
        return None

    def active_workflows(self) -> List[WorkflowLedger]:
        return list(self._ledgers.values())

    def history(self, limit: Optional[int] = None) -> List[WorkflowLedger]:
        """Finished ledgers, newest first."""
        items = list(reversed(self._history))
        return items[:limit] if limit is not None else items

    def workflow_history(self, workflow_id: str) -> List[ExecutedAction]:
        """Recorded actions of one workflow, oldest first, with their rollback status."""
        ledger = self.get_ledger(workflow_id)
        return list(ledger.actions) if ledger is not None else []

    def clear_history(self, older_than: Optional[timedelta] = None) -> int:
        if older_than is None:
            removed = len(self._history)
            self._history.clear()
            return removed
        cutoff = _utcnow() - older_than
        keep = [l for l in self._history if (l.completed_at or l.started_at) >= cutoff]
        removed = len(self._history) - len(keep)
        self._history.clear()
        self._history.extend(keep)
        return removed

    def workflows_requiring_manual_intervention(self) -> List[WorkflowLedger]:
        ledgers = list(self._ledgers.values()) + list(self._history)
        return [l for l in ledgers if l.manual_steps]

    def statistics(self) -> Dict[str, Any]:
        ledgers = list(self._ledgers.values()) + list(self._history)
        by_status: Dict[str, int] = {}
        for ledger in ledgers:
            by_status[ledger.status.value] = by_status.get(ledger.status.value, 0) + 1
        actions = [a for l in ledgers for a in l.actions]
        return {
            "total_workflows": len(ledgers),
            "active_workflows": len(self._ledgers),
            "workflows_by_status": by_status,
            "total_actions": len(actions),
            "rolled_back_actions": sum(a.rollback_status is RollbackStatus.ROLLED_BACK for a in actions),
            "failed_rollbacks": sum(a.rollback_status is RollbackStatus.FAILED for a in actions),
            "manual_interventions": sum(len(l.manual_steps) for l in ledgers),
            "rollbacks_performed": sum(len(l.rollback_results) for l in ledgers),
        }

    def export_for_debugging(self, workflow_id: Optional[str] = None) -> Dict[str, Any]:
        if workflow_id is not None:
            ledger = self.get_ledger(workflow_id)
            return {"workflow": ledger.model_dump(mode="json") if ledger else None}
        return {
            "active": [l.model_dump(mode="json") for l in self._ledgers.values()],
            "history": [l.model_dump(mode="json") for l in self._history],
            "statistics": self.statistics(),
        }
