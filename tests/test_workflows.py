import pytest

from actflow.dispatchers import InMemoryDispatcher
from actflow.engine import WorkflowEngine
from actflow.errors import PermanentError
from actflow.models import StepStatus, WorkflowStatus
from actflow.retry import RetryEngine
from actflow.validation import validate_workflow
from actflow.workflows import (
    PREBUILT_WORKFLOWS,
    bug_report_workflow,
    handle_bug_report,
    handle_invoice,
    handle_meeting,
    handle_report,
    invoice_workflow,
    meeting_workflow,
    report_workflow,
)


async def _no_sleep(delay: float) -> None:
    return None


def _dispatcher() -> InMemoryDispatcher:
    dispatcher = InMemoryDispatcher()
    dispatcher.register(
        "file_document",
        "drive",
        lambda params: {"fileId": f"file-{params['name']}", "webViewLink": f"https://drive/{params['name']}"},
    )
    dispatcher.register(
        "create_task", "trello", lambda params: {"id": "card-1", "url": "https://trello/card-1"}
    )
    dispatcher.register(
        "create_task", "notion", lambda params: {"id": "page-1", "url": "https://notion/page-1"}
    )
    return dispatcher


def _engine(dispatcher) -> WorkflowEngine:
    return WorkflowEngine(dispatcher, retry_engine=RetryEngine(sleep=_no_sleep))


def test_prebuilt_definitions_are_valid():
    definitions = [
        invoice_workflow("inv.pdf", b"%PDF", "Acme", 120.0, "2026-11-01"),
        bug_report_workflow("Crash", "App crashes", "High", "sam", "L1", "S1"),
        meeting_workflow("Sync", "2026-11-02", "10:00", 30, ["a@x.io"], "Agenda", "D1"),
        report_workflow("q3.pdf", "body", "Q3 Report", ["cfo"], "2026-11-03", "L2"),
    ]
    for definition in definitions:
        assert validate_workflow(definition) == []
    assert set(PREBUILT_WORKFLOWS) == {"invoice", "bug_report", "meeting", "report"}


@pytest.mark.asyncio
async def test_invoice_workflow_uses_settings_and_earlier_results():
    dispatcher = _dispatcher()

    result = await handle_invoice(
        _engine(dispatcher),
        "inv.pdf",
        b"%PDF",
        "Acme",
        120.0,
        "2026-11-01",
        settings={"SHEETS_LOG_SPREADSHEET_ID": "sheet-9"},
        signal_id="email-1",
    )

    assert result.success is True
    row_call = dispatcher.calls_for("update_sheet", "sheets")[0]
    assert row_call["spreadsheetId"] == "sheet-9"
    assert row_call["values"][0][1:5] == ["Acme", 120.0, "2026-11-01", "Pending"]
    assert row_call["values"][0][5] == "https://drive/inv.pdf"
    notify = dispatcher.calls_for("send_notification", "slack")[0]
    assert notify["message"] == "Invoice from Acme for $120.0"


@pytest.mark.asyncio
async def test_invoice_sheet_failure_deletes_filed_document():
    dispatcher = _dispatcher()
    dispatcher.fail_next("update_sheet", "sheets", PermanentError("bad range", status=400))

    result = await handle_invoice(
        _engine(dispatcher), "inv.pdf", b"%PDF", "Acme", 120.0, "2026-11-01", spreadsheet_id="S1"
    )

    assert result.status == WorkflowStatus.ROLLED_BACK
    assert result.failed_step == "update-sheet"
    assert dispatcher.calls_for("delete_file", "drive") == [{"fileId": "file-inv.pdf"}]
    assert dispatcher.calls_for("send_notification") == []


@pytest.mark.asyncio
async def test_bug_report_survives_optional_notification_failure():
    dispatcher = _dispatcher()
    dispatcher.fail_next("send_notification", "slack", PermanentError("channel_not_found", status=404))

    result = await handle_bug_report(
        _engine(dispatcher), "Crash", "App crashes", "High", "sam", "L1", "S1"
    )

    assert result.success is True
    assert result.step_status("notify-devs") == StepStatus.FAILED
    assert result.step_status("track-sheet") == StepStatus.COMPLETED
    card = dispatcher.calls_for("create_task", "trello")[0]
    assert card["name"] == "[BUG] Crash"
    assert card["labels"] == ["high", "bug"]


@pytest.mark.asyncio
async def test_meeting_failure_is_not_rolled_back():
    dispatcher = _dispatcher()
    dispatcher.fail_next("create_task", "notion", PermanentError("invalid database", status=400))

    result = await handle_meeting(
        _engine(dispatcher), "Sync", "2026-11-02", "10:00", 30, ["a@x.io", "b@x.io"], "Agenda", "D1"
    )

    assert result.status == WorkflowStatus.FAILED
    assert result.rollback_performed is False
    assert result.step_status("notify-attendees") == StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_report_review_task_failure_rolls_back_file():
    dispatcher = _dispatcher()
    dispatcher.fail_next("create_task", "trello", PermanentError("invalid list", status=400))

    result = await handle_report(
        _engine(dispatcher), "q3.pdf", "body", "Q3 Report", ["cfo", "ceo"], "2026-11-03", "L2"
    )

    assert result.status == WorkflowStatus.ROLLED_BACK
    assert dispatcher.calls_for("delete_file", "drive") == [{"fileId": "file-q3.pdf"}]
