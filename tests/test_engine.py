"""End-to-end tests for the workflow engine."""

import asyncio

import pytest

import actflow.persistence as persistence
from actflow.config import ActflowConfig
from actflow.contracts import RollbackSpec, WorkflowDefinition, WorkflowStep
from actflow.dispatchers import InMemoryDispatcher
from actflow.errors import PermanentError, TransientError, WorkflowValidationError
from actflow.events import ALL_EVENTS, InMemoryEventBus
from actflow.engine import WorkflowEngine, create_engine
from actflow.idempotency import IdempotencyGate
from actflow.models import StepStatus, WorkflowStatus
from actflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from actflow.retry import RetryEngine, RetryPolicy


async def _no_sleep(delay: float) -> None:
    return None


def _engine(dispatcher, **kwargs) -> WorkflowEngine:
    retry_engine = RetryEngine(
        {
            name: RetryPolicy(max_retries=2, base_delay=0.01, max_delay=0.01, jitter=0.0)
            for name in ("generic", "drive", "sheets", "slack", "trello", "notion")
        },
        sleep=_no_sleep,
    )
    return WorkflowEngine(dispatcher, retry_engine=retry_engine, **kwargs)


def _upload_log_notify() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="invoice-test",
        name="Invoice",
        steps=[
            WorkflowStep(
                id="upload",
                action="upload_file",
                target="drive",
                params={"name": "inv.pdf"},
            ),
            WorkflowStep(
                id="logRow",
                action="append_data",
                target="sheets",
                params={"spreadsheetId": "s1", "values": [["$upload.id"]]},
                depends_on=["upload"],
            ),
            WorkflowStep(
                id="notify",
                action="send_notification",
                target="slack",
                params={"message": "filed $upload.id"},
                depends_on=["upload", "logRow"],
            ),
        ],
    )


@pytest.mark.asyncio
async def test_failed_step_rolls_back_earlier_steps():
    dispatcher = InMemoryDispatcher()
    dispatcher.register("upload_file", "drive", lambda params: {"id": "f1"})
    dispatcher.fail_next("append_data", "sheets", PermanentError("bad range", status=400))
    engine = _engine(dispatcher)

    result = await engine.execute_workflow(_upload_log_notify(), signal_id="sig-1")

    assert result.success is False
    assert result.status == WorkflowStatus.ROLLED_BACK
    assert result.failed_step == "logRow"
    assert result.rollback_performed is True
    assert result.rollback.rolled_back_count == 1
    assert dispatcher.calls_for("delete_file", "drive") == [{"fileId": "f1"}]
    assert dispatcher.calls_for("send_notification") == []
    assert result.step_status("upload") == StepStatus.COMPLETED
    assert result.step_status("logRow") == StepStatus.FAILED
    assert result.step_status("notify") == StepStatus.SKIPPED
    assert result.step_results["logRow"].error_type == "validation"


@pytest.mark.asyncio
async def test_duplicate_signal_dispatches_once():
    dispatcher = InMemoryDispatcher()
    gate = IdempotencyGate()
    engine = _engine(dispatcher, gate=gate)
    definition = WorkflowDefinition(
        id="card",
        name="Card",
        steps=[
            WorkflowStep(
                id="create",
                action="create_task",
                target="trello",
                params={"name": "Bug", "listId": "L1"},
            )
        ],
    )

    first = await engine.execute_workflow(definition, signal_id="sig-dup")
    second = await engine.execute_workflow(definition, signal_id="sig-dup")

    assert first.success and second.success
    assert len(dispatcher.calls_for("create_task", "trello")) == 1
    assert second.step_results["create"].cached is True
    assert second.step_results["create"].result == first.step_results["create"].result
    assert (await gate.stats()).duplicates_prevented == 1


@pytest.mark.asyncio
async def test_different_signals_dispatch_again():
    dispatcher = InMemoryDispatcher()
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="card",
        name="Card",
        steps=[WorkflowStep(id="create", action="create_task", target="trello", params={"name": "Bug"})],
    )

    await engine.execute_workflow(definition, signal_id="sig-a")
    await engine.execute_workflow(definition, signal_id="sig-b")

    assert len(dispatcher.calls_for("create_task")) == 2


@pytest.mark.asyncio
async def test_rollback_runs_newest_first_and_skips_failed_step():
    dispatcher = InMemoryDispatcher()
    dispatcher.register("create_task", "trello", lambda params: {"id": f"card-{params['name']}"})
    dispatcher.fail_next("create_page", "notion", PermanentError("conflict", status=409))
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="abc",
        name="ABC",
        steps=[
            WorkflowStep(id="a", action="create_task", target="trello", params={"name": "A"}),
            WorkflowStep(id="b", action="create_task", target="trello", params={"name": "B"}),
            WorkflowStep(id="c", action="create_page", target="notion", params={"title": "C"}),
        ],
    )

    result = await engine.execute_workflow(definition)

    assert result.status == WorkflowStatus.ROLLED_BACK
    assert dispatcher.calls_for("delete_card", "trello") == [
        {"cardId": "card-B"},
        {"cardId": "card-A"},
    ]
    ledger = next(l for l in engine.coordinator.history() if l.workflow_id == result.execution_id)
    assert [a.step_id for a in ledger.actions] == ["a", "b"]


@pytest.mark.asyncio
async def test_transient_failures_are_retried_within_a_step():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("create_task", "trello", TransientError("reset", code="ECONNRESET"), times=2)
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="retry",
        name="Retry",
        steps=[WorkflowStep(id="create", action="create_task", target="trello")],
    )

    result = await engine.execute_workflow(definition)

    assert result.success is True
    assert len(dispatcher.calls_for("create_task")) == 3


@pytest.mark.asyncio
async def test_step_retry_count_overrides_policy():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("create_task", "trello", TransientError("reset"), times=5)
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="retry",
        name="Retry",
        rollback_on_failure=False,
        steps=[WorkflowStep(id="create", action="create_task", target="trello", retry_count=0)],
    )

    result = await engine.execute_workflow(definition)

    assert result.status == WorkflowStatus.FAILED
    assert len(dispatcher.calls_for("create_task")) == 1


@pytest.mark.asyncio
async def test_optional_step_failure_continues():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("send_notification", "slack", PermanentError("channel_not_found", status=404))
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="opt",
        name="Optional",
        steps=[
            WorkflowStep(id="create", action="create_task", target="trello"),
            WorkflowStep(
                id="notify",
                action="send_notification",
                target="slack",
                depends_on=["create"],
                optional=True,
            ),
            WorkflowStep(id="page", action="create_page", target="notion", depends_on=["create"]),
        ],
    )

    result = await engine.execute_workflow(definition)

    assert result.success is True
    assert result.status == WorkflowStatus.COMPLETED
    assert result.step_status("notify") == StepStatus.FAILED
    assert result.step_status("page") == StepStatus.COMPLETED
    assert result.progress.failed_steps == 1
    assert result.progress.completed_steps == 2


@pytest.mark.asyncio
async def test_step_with_unsatisfied_dependency_is_blocked():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("create_task", "trello", PermanentError("invalid", status=422))
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="blocked",
        name="Blocked",
        steps=[
            WorkflowStep(id="card", action="create_task", target="trello", optional=True),
            WorkflowStep(
                id="notify", action="send_notification", target="slack", depends_on=["card"]
            ),
            WorkflowStep(id="page", action="create_page", target="notion"),
        ],
    )

    result = await engine.execute_workflow(definition)

    assert result.success is True
    assert result.step_status("notify") == StepStatus.BLOCKED
    assert "card" in result.step_results["notify"].error
    assert dispatcher.calls_for("send_notification") == []
    assert result.step_status("page") == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_params_resolve_from_earlier_results_and_initial_context():
    dispatcher = InMemoryDispatcher()
    dispatcher.register(
        "file_document", "drive", lambda params: {"fileId": "F9", "webViewLink": "http://d/F9"}
    )
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="refs",
        name="Refs",
        steps=[
            WorkflowStep(id="file", action="file_document", target="drive", params={"name": "x"}),
            WorkflowStep(
                id="log",
                action="append_data",
                target="sheets",
                params={
                    "spreadsheetId": "$SHEET_ID",
                    "values": [["$vendor", "$file.webViewLink"]],
                    "note": "see $file.fileId",
                },
                depends_on=["file"],
            ),
        ],
    )

    result = await engine.execute_workflow(definition, {"SHEET_ID": "S1", "vendor": "Acme"})

    assert result.success is True
    assert dispatcher.calls_for("append_data") == [
        {"spreadsheetId": "S1", "values": [["Acme", "http://d/F9"]], "note": "see F9"}
    ]
    assert result.context["file"] == {"fileId": "F9", "webViewLink": "http://d/F9"}


@pytest.mark.asyncio
async def test_explicit_rollback_spec_is_used():
    dispatcher = InMemoryDispatcher()
    dispatcher.register("file_document", "drive", lambda params: {"fileId": "F1"})
    dispatcher.fail_next("create_task", "trello", PermanentError("bad list", status=400))
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="explicit-undo",
        name="Explicit undo",
        steps=[
            WorkflowStep(
                id="file",
                action="file_document",
                target="drive",
                rollback=RollbackSpec(action="trash_file", params={"fileId": "$file.fileId"}),
            ),
            WorkflowStep(id="card", action="create_task", target="trello", depends_on=["file"]),
        ],
    )

    result = await engine.execute_workflow(definition)

    assert result.status == WorkflowStatus.ROLLED_BACK
    assert dispatcher.calls_for("trash_file", "drive") == [{"fileId": "F1"}]
    assert dispatcher.calls_for("delete_file") == []


@pytest.mark.asyncio
async def test_non_reversible_step_reports_manual_intervention():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("create_page", "notion", PermanentError("nope", status=400))
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="manual",
        name="Manual",
        steps=[
            WorkflowStep(id="notify", action="send_notification", target="slack"),
            WorkflowStep(id="page", action="create_page", target="notion"),
        ],
    )

    result = await engine.execute_workflow(definition)

    assert result.status == WorkflowStatus.ROLLED_BACK
    assert result.rollback.success is False
    assert len(result.manual_steps) == 1
    assert result.manual_steps[0].action_type == "send_notification"


@pytest.mark.asyncio
async def test_rollback_disabled_marks_workflow_failed():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("create_page", "notion", PermanentError("nope", status=400))
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="norb",
        name="No rollback",
        rollback_on_failure=False,
        steps=[
            WorkflowStep(id="card", action="create_task", target="trello"),
            WorkflowStep(id="page", action="create_page", target="notion"),
        ],
    )

    result = await engine.execute_workflow(definition)

    assert result.status == WorkflowStatus.FAILED
    assert result.rollback_performed is False
    assert result.rollback is None
    assert dispatcher.calls_for("delete_card") == []


@pytest.mark.asyncio
async def test_invalid_definition_raises_before_dispatch():
    dispatcher = InMemoryDispatcher()
    engine = _engine(dispatcher)
    definition = WorkflowDefinition(
        id="bad",
        name="Bad",
        steps=[
            WorkflowStep(id="a", action="create_task", target="trello", depends_on=["missing"]),
        ],
    )

    with pytest.raises(WorkflowValidationError) as excinfo:
        await engine.execute_workflow(definition)

    assert any("missing" in err for err in excinfo.value.errors)
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_cancelled_before_start_fails_first_step():
    dispatcher = InMemoryDispatcher()
    engine = _engine(dispatcher)
    cancel = asyncio.Event()
    cancel.set()
    definition = WorkflowDefinition(
        id="cancel",
        name="Cancel",
        rollback_on_failure=False,
        steps=[
            WorkflowStep(id="a", action="create_task", target="trello", optional=True),
            WorkflowStep(id="b", action="create_task", target="trello"),
        ],
    )

    result = await engine.execute_workflow(definition, cancel_event=cancel)

    assert result.status == WorkflowStatus.FAILED
    assert result.step_results["a"].error_type == "cancelled"
    assert result.step_status("b") == StepStatus.SKIPPED
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_events_are_published_in_order():
    dispatcher = InMemoryDispatcher()
    bus = InMemoryEventBus()
    seen = []

    async def collect(event):
        seen.append(event.name)

    bus.subscribe(ALL_EVENTS, collect)
    engine = _engine(dispatcher, event_bus=bus)
    definition = WorkflowDefinition(
        id="events",
        name="Events",
        steps=[
            WorkflowStep(id="a", action="create_task", target="trello"),
            WorkflowStep(id="b", action="create_page", target="notion", depends_on=["a"]),
        ],
    )

    await engine.execute_workflow(definition)

    assert seen == [
        "workflow.started",
        "step.started",
        "step.completed",
        "workflow.progress",
        "step.started",
        "step.completed",
        "workflow.progress",
        "workflow.completed",
    ]


@pytest.mark.asyncio
async def test_failure_events_include_rollback():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("create_page", "notion", PermanentError("nope", status=400))
    bus = InMemoryEventBus()
    seen = []

    async def collect(event):
        seen.append(event.name)

    bus.subscribe(ALL_EVENTS, collect)
    engine = _engine(dispatcher, event_bus=bus)
    definition = WorkflowDefinition(
        id="events",
        name="Events",
        steps=[
            WorkflowStep(id="a", action="create_task", target="trello"),
            WorkflowStep(id="b", action="create_page", target="notion"),
        ],
    )

    await engine.execute_workflow(definition)

    assert seen[-4:] == [
        "workflow.progress",
        "rollback.started",
        "rollback.completed",
        "workflow.failed",
    ]
    assert "step.failed" in seen


@pytest.mark.asyncio
async def test_progress_callback_receives_updates():
    dispatcher = InMemoryDispatcher()
    updates = []
    engine = _engine(dispatcher, on_progress=updates.append)
    definition = WorkflowDefinition(
        id="progress",
        name="Progress",
        steps=[
            WorkflowStep(id="a", action="create_task", target="trello"),
            WorkflowStep(id="b", action="create_page", target="notion"),
        ],
    )

    result = await engine.execute_workflow(definition)

    assert [u.current_step for u in updates] == ["a", "b"]
    assert [u.completed_steps for u in updates] == [1, 2]
    assert updates[-1].percent_complete == 100.0
    assert result.progress.percent_complete == 100.0


@pytest.mark.asyncio
async def test_failing_progress_callback_is_logged(caplog):
    dispatcher = InMemoryDispatcher()

    def broken(progress):
        raise RuntimeError("ui went away")

    engine = _engine(dispatcher, on_progress=broken)
    definition = WorkflowDefinition(
        id="progress",
        name="Progress",
        steps=[WorkflowStep(id="a", action="create_task", target="trello")],
    )

    result = await engine.execute_workflow(definition)

    assert result.success is True
    assert "Progress callback failed" in caplog.text


@pytest.mark.asyncio
async def test_execution_is_persisted():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("create_page", "notion", PermanentError("nope", status=400))
    repo = InMemoryWorkflowRepository()
    engine = _engine(dispatcher, repository=repo)
    definition = WorkflowDefinition(
        id="persist",
        name="Persist",
        steps=[
            WorkflowStep(id="a", action="create_task", target="trello"),
            WorkflowStep(id="b", action="create_page", target="notion"),
        ],
    )

    result = await engine.execute_workflow(definition, {"vendor": "Acme"})

    ex = await repo.get_execution(result.execution_id)
    assert ex is not None
    assert ex.workflow_id == "persist"
    assert ex.status == "rolled_back"
    assert ex.context["vendor"] == "Acme"
    assert "a" in ex.context
    statuses = {s.step_id: s.status for s in ex.steps}
    assert statuses == {"a": "completed", "b": "failed"}


@pytest.mark.asyncio
async def test_engine_context_manager_connects_dispatcher():
    class TrackingDispatcher(InMemoryDispatcher):
        connected = False

        async def connect(self):
            self.connected = True

        async def disconnect(self):
            self.connected = False

    dispatcher = TrackingDispatcher()
    async with _engine(dispatcher) as engine:
        assert dispatcher.connected is True
        assert isinstance(engine, WorkflowEngine)
    assert dispatcher.connected is False


@pytest.mark.asyncio
async def test_rolled_back_steps_run_again_for_the_same_signal():
    dispatcher = InMemoryDispatcher()
    uploads = iter(["f1", "f2"])
    dispatcher.register("upload_file", "drive", lambda params: {"id": next(uploads)})
    dispatcher.fail_next("append_data", "sheets", PermanentError("bad range", status=400))
    engine = _engine(dispatcher)

    first = await engine.execute_workflow(_upload_log_notify(), signal_id="sig")
    assert first.status == WorkflowStatus.ROLLED_BACK
    assert dispatcher.calls_for("delete_file", "drive") == [{"fileId": "f1"}]
    assert await engine.gate.get_record(first.step_results["upload"].idempotency_key) is None

    second = await engine.execute_workflow(_upload_log_notify(), signal_id="sig")

    assert second.success is True
    assert len(dispatcher.calls_for("upload_file", "drive")) == 2
    assert second.step_results["upload"].cached is False
    assert second.context["upload"] == {"id": "f2"}
    assert dispatcher.calls_for("append_data", "sheets")[-1]["values"] == [["f2"]]


@pytest.mark.asyncio
async def test_concurrent_duplicate_rolls_back_its_own_upload():
    dispatcher = InMemoryDispatcher()
    both_uploading = asyncio.Event()
    uploads = []

    async def upload(params):
        uploads.append(params)
        file_id = f"file-{len(uploads)}"
        if len(uploads) == 2:
            both_uploading.set()
        await both_uploading.wait()
        await asyncio.sleep(0 if file_id == "file-1" else 0.01)
        return {"id": file_id}

    dispatcher.register("upload_file", "drive", upload)
    dispatcher.fail_next("append_data", "sheets", PermanentError("bad range", status=400))
    engine = _engine(dispatcher)

    upload_step = WorkflowStep(id="upload", action="upload_file", target="drive", params={"name": "inv.pdf"})
    notify = WorkflowDefinition(
        id="notify-after-upload",
        name="Notify",
        steps=[
            upload_step,
            WorkflowStep(id="notify", action="send_notification", target="slack", depends_on=["upload"]),
        ],
    )
    log_row = WorkflowDefinition(
        id="log-after-upload",
        name="Log",
        steps=[
            upload_step,
            WorkflowStep(
                id="logRow",
                action="append_data",
                target="sheets",
                params={"values": [["$upload.id"]]},
                depends_on=["upload"],
            ),
        ],
    )

    a, b = await asyncio.gather(
        engine.execute_workflow(notify, signal_id="sig"),
        engine.execute_workflow(log_row, signal_id="sig"),
    )

    assert a.success is True
    assert b.status == WorkflowStatus.ROLLED_BACK
    a_file = a.context["upload"]["id"]
    b_file = b.context["upload"]["id"]
    assert {a_file, b_file} == {"file-1", "file-2"}
    assert a.step_results["upload"].cached is False
    assert b.step_results["upload"].cached is False
    assert dispatcher.calls_for("append_data", "sheets") == [{"values": [[b_file]]}]
    assert dispatcher.calls_for("delete_file", "drive") == [{"fileId": b_file}]


@pytest.mark.asyncio
async def test_repository_errors_do_not_abort_the_workflow(caplog):
    class FullDiskRepository(InMemoryWorkflowRepository):
        async def mark_step_completed(self, *args, **kwargs):
            raise OSError("disk full")

    dispatcher = InMemoryDispatcher()
    repo = FullDiskRepository()
    engine = _engine(dispatcher, repository=repo)
    definition = WorkflowDefinition(
        id="disk",
        name="Disk",
        steps=[
            WorkflowStep(id="a", action="create_task", target="trello"),
            WorkflowStep(id="b", action="create_page", target="notion", depends_on=["a"]),
        ],
    )

    result = await engine.execute_workflow(definition)

    assert result.success is True
    assert result.status == WorkflowStatus.COMPLETED
    assert len(dispatcher.calls) == 2
    assert dispatcher.calls_for("delete_card") == []
    assert "Repository mark_step_completed failed" in caplog.text
    assert "disk full" in caplog.text
    ex = await repo.get_execution(result.execution_id)
    assert ex.status == "completed"


@pytest.mark.asyncio
async def test_cancel_during_backoff_rolls_back_completed_steps():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("create_page", "notion", TransientError("reset"), times=3)
    cancel = asyncio.Event()

    async def cancelling_sleep(delay: float) -> None:
        cancel.set()

    retry_engine = RetryEngine(
        {
            name: RetryPolicy(max_retries=3, base_delay=0.01, max_delay=0.01, jitter=0.0)
            for name in ("trello", "notion")
        },
        sleep=cancelling_sleep,
    )
    engine = WorkflowEngine(dispatcher, retry_engine=retry_engine)
    definition = WorkflowDefinition(
        id="cancel-mid-retry",
        name="Cancel",
        steps=[
            WorkflowStep(id="card", action="create_task", target="trello"),
            WorkflowStep(id="page", action="create_page", target="notion", depends_on=["card"]),
        ],
    )

    result = await engine.execute_workflow(definition, cancel_event=cancel)

    assert result.status == WorkflowStatus.ROLLED_BACK
    assert result.failed_step == "page"
    assert result.step_results["page"].error_type == "cancelled"
    assert len(dispatcher.calls_for("create_page", "notion")) == 1
    card_id = result.context["card"]["id"]
    assert dispatcher.calls_for("delete_card", "trello") == [{"cardId": card_id}]


def test_create_engine_persists_only_with_database_url(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)

    engine = create_engine(ActflowConfig(), dispatcher=InMemoryDispatcher())
    assert engine.repository is None

    config = ActflowConfig(database_url="sqlite://" + str(tmp_path / "wf.db"))
    engine = create_engine(config, dispatcher=InMemoryDispatcher())
    assert isinstance(engine.repository, SQLiteWorkflowRepository)
