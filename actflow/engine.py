"""Workflow engine: runs ordered, dependent steps as a pseudo-transaction."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .config import ActflowConfig, load_config
from .contracts import ActionRequest, WorkflowDefinition, WorkflowStep
from .dispatchers import BaseDispatcher, get_dispatcher
from .errors import RetryCancelledError, WorkflowStepError, WorkflowValidationError
from .events import (
    ROLLBACK_COMPLETED,
    ROLLBACK_STARTED,
    STEP_BLOCKED,
    STEP_COMPLETED,
    STEP_FAILED,
    STEP_STARTED,
    WORKFLOW_COMPLETED,
    WORKFLOW_FAILED,
    WORKFLOW_PROGRESS,
    WORKFLOW_STARTED,
    Event,
    EventBus,
    InMemoryEventBus,
)
from .idempotency import IdempotencyGate, get_idempotency_gate
from .models import (
    StepResult,
    StepStatus,
    WorkflowExecutionRecord,
    WorkflowProgress,
    WorkflowResult,
    WorkflowStatus,
)
from .params import resolve_params
from .persistence import WorkflowRepository, get_repository
from .retry import AuthRefresher, RetryEngine, classify_error
from .rollback import RollbackCoordinator, RollbackResult, RollbackStatus, UndoOperation
from .validation import validate_workflow

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[WorkflowProgress], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowEngine:
    """Executes workflow definitions step by step.

    Each step goes through the idempotency gate, then the retry engine, then
    the dispatcher. Freshly dispatched results are recorded with the rollback
    coordinator so a later non-optional failure can undo them in reverse
    order. Business failures never raise out of :meth:`execute_workflow`;
    they are reported on the returned :class:`WorkflowResult`.
    """

    def __init__(
        self,
        dispatcher: BaseDispatcher,
        gate: IdempotencyGate | None = None,
        retry_engine: RetryEngine | None = None,
        coordinator: RollbackCoordinator | None = None,
        event_bus: EventBus | None = None,
        repository: WorkflowRepository | None = None,
        *,
        on_progress: ProgressCallback | None = None,
        auto_cleanup: bool = False,
    ) -> None:
        self.dispatcher = dispatcher
        self.gate = gate or IdempotencyGate()
        self.retry_engine = retry_engine or RetryEngine()
        self.coordinator = coordinator or RollbackCoordinator(dispatcher, self.retry_engine)
        self.event_bus = event_bus or InMemoryEventBus()
        self.repository = repository
        self.on_progress = on_progress
        self.auto_cleanup = auto_cleanup

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        await self.dispatcher.connect()
        if self.auto_cleanup:
            self.gate.start_auto_cleanup()

    async def close(self) -> None:
        await self.gate.stop_auto_cleanup()
        await self.dispatcher.disconnect()

    async def __aenter__(self) -> "WorkflowEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Execution
    async def execute_workflow(
        self,
        definition: WorkflowDefinition,
        initial_context: Optional[Dict[str, Any]] = None,
        *,
        signal_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: ProgressCallback | None = None,
    ) -> WorkflowResult:
        """Run ``definition`` to a terminal state.

        Raises :class:`WorkflowValidationError` before any remote call when
        the definition is structurally invalid.
        """
        errors = validate_workflow(definition)
        if errors:
            logger.error(f"Workflow {definition.id} failed validation: {errors}")
            raise WorkflowValidationError(errors)

        on_progress = on_progress or self.on_progress
        record = WorkflowExecutionRecord(
            workflow_id=definition.id, context=dict(initial_context or {})
        )
        execution_id = record.execution_id
        record.transition(WorkflowStatus.RUNNING)
        self.coordinator.start_workflow(execution_id, definition.name)

        await self._persist(
            "create_execution",
            execution_id,
            definition.id,
            definition.model_dump(mode="json", by_alias=True),
            record.context,
        )
        await self._persist("update_status", execution_id, record.status.value)

        logger.info(
            f"Starting workflow {definition.id} ({len(definition.steps)} steps), execution {execution_id}"
        )
        await self._emit(
            WORKFLOW_STARTED,
            record,
            workflow_name=definition.name,
            total_steps=len(definition.steps),
            signal_id=signal_id,
        )

        failure: WorkflowStepError | None = None
        for index, step in enumerate(definition.steps):
            if cancel_event is not None and cancel_event.is_set():
                failure = WorkflowStepError(
                    step.id,
                    RetryCancelledError("Workflow cancelled before step started"),
                    "cancelled",
                )
            else:
                failure = await self._run_one(
                    step, record, signal_id=signal_id, cancel_event=cancel_event
                )

            if failure is not None:
                if failure.step_id not in record.step_results:
                    await self._record_failure(step, record, failure, _utcnow())
                await self._report_progress(record, definition, step.id, on_progress)
                for remaining in definition.steps[index + 1 :]:
                    record.record_step(
                        StepResult(step_id=remaining.id, status=StepStatus.SKIPPED)
                    )
                break
            await self._report_progress(record, definition, step.id, on_progress)

        rollback: RollbackResult | None = None
        if failure is None:
            record.transition(WorkflowStatus.COMPLETED)
        elif definition.rollback_on_failure:
            rollback = await self._rollback(record)
            record.transition(
                WorkflowStatus.ROLLED_BACK if rollback.ran else WorkflowStatus.FAILED
            )
        else:
            record.transition(WorkflowStatus.FAILED)

        self.coordinator.complete_workflow(execution_id)
        progress = self._progress(record, definition, None)

        await self._persist("update_context", execution_id, record.context)
        await self._persist("update_status", execution_id, record.status.value)

        result = WorkflowResult(
            workflow_id=definition.id,
            execution_id=execution_id,
            success=record.status == WorkflowStatus.COMPLETED,
            status=record.status,
            error=str(failure) if failure else None,
            failed_step=failure.step_id if failure else None,
            rollback_performed=bool(rollback and rollback.ran),
            rollback=rollback,
            manual_steps=list(rollback.manual_steps) if rollback else [],
            step_results=dict(record.step_results),
            progress=progress,
            context=dict(record.context),
            started_at=record.started_at,
            ended_at=record.ended_at,
        )

        if result.success:
            logger.info(f"Workflow {definition.id} completed (execution {execution_id})")
            await self._emit(WORKFLOW_COMPLETED, record, duration=result.duration)
        else:
            logger.error(
                f"Workflow {definition.id} ended as {record.status.value}: {result.error}"
            )
            await self._emit(
                WORKFLOW_FAILED,
                record,
                status=record.status.value,
                error=result.error,
                failed_step=result.failed_step,
                rollback_performed=result.rollback_performed,
            )
        return result

    async def _run_one(
        self,
        step: WorkflowStep,
        record: WorkflowExecutionRecord,
        *,
        signal_id: Optional[str],
        cancel_event: Optional[asyncio.Event],
    ) -> WorkflowStepError | None:
        """Run one step and record its result. Returns the failure to abort on."""
        missing = [
            dep
            for dep in step.depends_on
            if record.step_results.get(dep) is None
            or record.step_results[dep].status != StepStatus.COMPLETED
        ]
        if missing:
            reason = f"Dependencies not satisfied: {', '.join(missing)}"
            logger.warning(f"Step {step.id} blocked. {reason}")
            now = _utcnow()
            record.record_step(
                StepResult(
                    step_id=step.id,
                    status=StepStatus.BLOCKED,
                    error=reason,
                    started_at=now,
                    ended_at=now,
                )
            )
            await self._emit(STEP_BLOCKED, record, step_id=step.id, missing=missing)
            await self._persist(
                "mark_step_completed",
                record.execution_id,
                step.id,
                StepStatus.BLOCKED.value,
                error=reason,
            )
            return None

        started_at = _utcnow()
        await self._emit(
            STEP_STARTED, record, step_id=step.id, action=step.action, target=step.target
        )
        await self._persist("mark_step_started", record.execution_id, step.id)

        try:
            result = await self.run_step(
                step,
                record.context,
                execution_id=record.execution_id,
                signal_id=signal_id,
                cancel_event=cancel_event,
                started_at=started_at,
            )
        except WorkflowStepError as exc:
            await self._record_failure(step, record, exc, started_at)
            if step.optional and exc.error_type != "cancelled":
                logger.warning(f"Optional step {step.id} failed, continuing: {exc.cause}")
                return None
            return exc

        record.record_step(result)
        await self._emit(
            STEP_COMPLETED,
            record,
            step_id=step.id,
            cached=result.cached,
            duration=result.duration,
        )
        await self._persist(
            "mark_step_completed",
            record.execution_id,
            step.id,
            StepStatus.COMPLETED.value,
            output={"result": result.result},
        )
        await self._persist("update_context", record.execution_id, record.context)
        return None

    async def run_step(
        self,
        step: WorkflowStep,
        context: Dict[str, Any],
        *,
        execution_id: str,
        signal_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
        started_at: Optional[datetime] = None,
    ) -> StepResult:
        """Execute a single step through the gate and the retry engine.

        On success the result is stored in ``context`` under the step id and,
        when it was not served from the idempotency cache, recorded with the
        rollback coordinator. Failures raise :class:`WorkflowStepError`.
        """
        started_at = started_at or _utcnow()
        params = resolve_params(step.params, context)
        request = ActionRequest(
            action_type=step.action, target=step.target, params=params, signal_id=signal_id
        )

        async def dispatch() -> Any:
            return await self.retry_engine.retry(
                lambda: self.dispatcher.execute(step.action, step.target, params),
                platform=step.target,
                operation=step.action,
                max_retries=step.retry_count,
                timeout=step.timeout,
                cancel_event=cancel_event,
            )

        try:
            outcome = await self.gate.execute(request, dispatch)
        except RetryCancelledError as exc:
            raise WorkflowStepError(step.id, exc, "cancelled") from exc
        except Exception as exc:
            raise WorkflowStepError(step.id, exc, classify_error(exc).value) from exc

        context[step.id] = outcome.result
        if outcome.cached:
            logger.info(f"Step {step.id} served from idempotency cache (key={outcome.key})")
        else:
            self.coordinator.record_action(
                execution_id,
                step.action,
                step.target,
                params,
                outcome.result,
                step_id=step.id,
                undo=self._undo_for(step, context),
                idempotency_key=outcome.key,
            )
        return StepResult(
            step_id=step.id,
            status=StepStatus.COMPLETED,
            result=outcome.result,
            cached=outcome.cached,
            idempotency_key=outcome.key,
            started_at=started_at,
            ended_at=_utcnow(),
        )

    @staticmethod
    def _undo_for(step: WorkflowStep, context: Dict[str, Any]) -> UndoOperation | None:
        if step.rollback is None:
            return None
        return UndoOperation(
            action=step.rollback.action,
            target=step.rollback.target or step.target,
            params=resolve_params(step.rollback.params, context),
        )

    async def _record_failure(
        self,
        step: WorkflowStep,
        record: WorkflowExecutionRecord,
        failure: WorkflowStepError,
        started_at: datetime,
    ) -> None:
        record.record_step(
            StepResult(
                step_id=step.id,
                status=StepStatus.FAILED,
                error=str(failure.cause),
                error_type=failure.error_type,
                started_at=started_at,
                ended_at=_utcnow(),
            )
        )
        logger.error(f"Step {step.id} failed ({failure.error_type}): {failure.cause}")
        await self._emit(
            STEP_FAILED,
            record,
            step_id=step.id,
            error=str(failure.cause),
            error_type=failure.error_type,
            optional=step.optional,
        )
        await self._persist(
            "mark_step_completed",
            record.execution_id,
            step.id,
            StepStatus.FAILED.value,
            error=str(failure.cause),
        )

    async def _rollback(self, record: WorkflowExecutionRecord) -> RollbackResult:
        execution_id = record.execution_id
        await self._emit(ROLLBACK_STARTED, record)
        logger.warning(f"Rolling back execution {execution_id}")
        try:
            result = await self.coordinator.rollback(execution_id)
        except Exception as exc:
            logger.error(f"Rollback of {execution_id} could not run: {exc}", exc_info=True)
            result = RollbackResult(
                workflow_id=execution_id, success=False, ran=False, error=str(exc)
            )
        if result.ran:
            await self._release_undone_keys(execution_id)
        await self._emit(
            ROLLBACK_COMPLETED,
            record,
            success=result.success,
            ran=result.ran,
            rolled_back=result.rolled_back_count,
            failed=result.failed_count,
            manual=result.manual_count,
        )
        return result

    async def _release_undone_keys(self, execution_id: str) -> int:
        """Forget the cached results of actions that were rolled back.

        A key is only cleared while it still holds this execution's result,
        so a concurrent execution that stored first keeps its entry.
        """
        ledger = self.coordinator.get_ledger(execution_id)
        if ledger is None:
            return 0
        released = 0
        for action in ledger.actions:
            if action.rollback_status is not RollbackStatus.ROLLED_BACK:
                continue
            if not action.idempotency_key:
                continue
            stored = await self.gate.get_record(action.idempotency_key)
            if stored is None or stored.result != action.result:
                continue
            if await self.gate.clear_key(action.idempotency_key):
                released += 1
        if released:
            logger.info(f"Released {released} idempotency key(s) after rolling back {execution_id}")
        return released

    async def _persist(self, operation: str, *args: Any, **kwargs: Any) -> None:
        """Write through to the repository; a failing write is logged, not raised."""
        if self.repository is None:
            return
        try:
            await getattr(self.repository, operation)(*args, **kwargs)
        except Exception as exc:
            logger.error(f"Repository {operation} failed for {args[0]}: {exc}", exc_info=True)

    # ------------------------------------------------------------------
    # Progress and events
    @staticmethod
    def _progress(
        record: WorkflowExecutionRecord,
        definition: WorkflowDefinition,
        current_step: Optional[str],
    ) -> WorkflowProgress:
        return WorkflowProgress(
            workflow_id=definition.id,
            execution_id=record.execution_id,
            completed_steps=record.count(StepStatus.COMPLETED),
            total_steps=len(definition.steps),
            failed_steps=record.count(StepStatus.FAILED),
            current_step=current_step,
            status=record.status,
        )

    async def _report_progress(
        self,
        record: WorkflowExecutionRecord,
        definition: WorkflowDefinition,
        current_step: str,
        on_progress: ProgressCallback | None,
    ) -> None:
        progress = self._progress(record, definition, current_step)
        await self._emit(
            WORKFLOW_PROGRESS,
            record,
            step_id=current_step,
            completed_steps=progress.completed_steps,
            total_steps=progress.total_steps,
            failed_steps=progress.failed_steps,
            percent_complete=progress.percent_complete,
        )
        if on_progress is None:
            return
        try:
            outcome = on_progress(progress)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.error(f"Progress callback failed: {exc}", exc_info=True)

    async def _emit(
        self,
        name: str,
        record: WorkflowExecutionRecord,
        step_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        await self.event_bus.publish(
            Event(
                name=name,
                workflow_id=record.workflow_id,
                execution_id=record.execution_id,
                step_id=step_id,
                data=data,
            )
        )


def _configured_repository(config: ActflowConfig) -> Optional[WorkflowRepository]:
    """Executions are only persisted when a database URL is configured."""
    if not config.database_url:
        return None
    return get_repository(config=config)


def create_engine(
    config: Optional[ActflowConfig] = None,
    *,
    dispatcher: Optional[BaseDispatcher] = None,
    repository: Optional[WorkflowRepository] = None,
    event_bus: Optional[EventBus] = None,
    auth_refreshers: Optional[Dict[str, AuthRefresher]] = None,
) -> WorkflowEngine:
    """Factory function to build a fully wired engine from configuration."""

    config = config or load_config()
    dispatcher = dispatcher or get_dispatcher(config=config)
    retry_engine = RetryEngine.from_config(config, auth_refreshers=auth_refreshers)
    return WorkflowEngine(
        dispatcher,
        gate=get_idempotency_gate(config),
        retry_engine=retry_engine,
        coordinator=RollbackCoordinator.from_config(config, dispatcher, retry_engine),
        event_bus=event_bus,
        repository=repository or _configured_repository(config),
        auto_cleanup=config.idempotency.enable_auto_cleanup,
    )
