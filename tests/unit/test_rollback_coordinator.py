"""Tests for the rollback coordinator."""

import asyncio

import pytest

from actflow.dispatchers import InMemoryDispatcher
from actflow.errors import PermanentError
from actflow.retry import RetryEngine, RetryPolicy
from actflow.rollback import (
    LedgerStatus,
    Reversibility,
    RollbackCoordinator,
    RollbackOptions,
    RollbackStatus,
    UndoOperation,
    UndoRule,
)


async def _no_sleep(delay: float) -> None:
    return None


def _coordinator(dispatcher=None, **kwargs) -> RollbackCoordinator:
    retry = RetryEngine(sleep=_no_sleep)
    for platform in ("trello", "drive", "notion", "sheets", "slack"):
        retry.set_policy(platform, RetryPolicy(max_retries=1, jitter=0))
    return RollbackCoordinator(dispatcher or InMemoryDispatcher(), retry, **kwargs)


@pytest.mark.asyncio
async def test_rollback_undoes_in_reverse_order():
    dispatcher = InMemoryDispatcher()
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1", "demo")
    coordinator.record_action("wf-1", "create_task", "trello", {"name": "A"}, {"id": "card-a"})
    coordinator.record_action("wf-1", "create_task", "trello", {"name": "B"}, {"id": "card-b"})

    result = await coordinator.rollback("wf-1")

    assert result.success is True
    assert result.rolled_back_count == 2
    assert dispatcher.calls == [
        ("delete_card", "trello", {"cardId": "card-b"}),
        ("delete_card", "trello", {"cardId": "card-a"}),
    ]
    ledger = coordinator.get_ledger("wf-1")
    assert ledger.status is LedgerStatus.ROLLED_BACK
    assert all(a.rollback_status is RollbackStatus.ROLLED_BACK for a in ledger.actions)


@pytest.mark.asyncio
async def test_non_reversible_action_yields_one_manual_entry():
    dispatcher = InMemoryDispatcher()
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    action = coordinator.record_action(
        "wf-1", "send_notification", "slack", {"channel": "ops", "message": "hi"}, {"ts": "1"}
    )
    assert action.reversibility is Reversibility.NON_REVERSIBLE
    assert action.undo is None

    result = await coordinator.rollback("wf-1")

    assert dispatcher.calls == []
    assert result.manual_count == 1
    assert len(result.manual_steps) == 1
    manual = result.manual_steps[0]
    assert manual.action_id == action.action_id
    assert "Channel: ops" in manual.instructions
    assert result.success is False

    # A second rollback never re-enters settled entries.
    again = await coordinator.rollback("wf-1")
    assert again.manual_count == 0
    assert dispatcher.calls == []


@pytest.mark.asyncio
async def test_sent_slack_message_is_left_for_manual_cleanup():
    dispatcher = InMemoryDispatcher()
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    action = coordinator.record_action(
        "wf-1", "send_message", "slack", {"channel": "C1"}, {"channel": "C1", "ts": "171.2"}
    )
    assert action.reversibility is Reversibility.NON_REVERSIBLE
    assert action.undo is None

    result = await coordinator.rollback("wf-1")

    assert result.manual_intervention_actions == [action.action_id]
    assert dispatcher.calls_for("delete_message") == []


@pytest.mark.asyncio
async def test_skip_non_reversible_option():
    coordinator = _coordinator()
    coordinator.start_workflow("wf-1")
    coordinator.record_action("wf-1", "send_email", "gmail", {"to": "a@b.c"}, {})

    result = await coordinator.rollback("wf-1", RollbackOptions(skip_non_reversible=True))

    assert result.skipped_actions and not result.manual_steps
    assert result.success is True


@pytest.mark.asyncio
async def test_partial_rollback_only_touches_last_entry():
    dispatcher = InMemoryDispatcher()
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    first = coordinator.record_action("wf-1", "create_task", "trello", {}, {"id": "a"})
    second = coordinator.record_action("wf-1", "create_task", "trello", {}, {"id": "b"})

    result = await coordinator.partial_rollback("wf-1", 1)

    assert result.rolled_back_actions == [second.action_id]
    assert dispatcher.calls == [("delete_card", "trello", {"cardId": "b"})]
    assert first.rollback_status is RollbackStatus.PENDING
    assert coordinator.get_ledger("wf-1").status is LedgerStatus.ACTIVE

    full = await coordinator.rollback("wf-1")
    assert full.rolled_back_actions == [first.action_id]


@pytest.mark.asyncio
async def test_confirmation_required_actions():
    dispatcher = InMemoryDispatcher()
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    action = coordinator.record_action("wf-1", "upload_file", "drive", {}, {"id": "file-1"})
    assert action.reversibility is Reversibility.CONFIRMATION_REQUIRED

    held = await coordinator.partial_rollback("wf-1", 1, RollbackOptions(require_confirmation=True))
    assert held.manual_intervention_actions == [action.action_id]
    assert dispatcher.calls == []

    coordinator.start_workflow("wf-2")
    other = coordinator.record_action("wf-2", "upload_file", "drive", {}, {"id": "file-2"})
    confirmed = await coordinator.rollback(
        "wf-2",
        RollbackOptions(require_confirmation=True, confirmed_actions={other.action_id}),
    )
    assert confirmed.rolled_back_actions == [other.action_id]
    assert dispatcher.calls == [("delete_file", "drive", {"fileId": "file-2"})]


@pytest.mark.asyncio
async def test_destructive_undo_of_reversible_action_waits_for_confirmation():
    dispatcher = InMemoryDispatcher()
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    folder = coordinator.record_action("wf-1", "create_folder", "drive", {}, {"id": "fold-1"})
    assert folder.reversibility is Reversibility.REVERSIBLE
    assert folder.undo.requires_confirmation is True

    held = await coordinator.rollback("wf-1", RollbackOptions(require_confirmation=True))

    assert held.manual_intervention_actions == [folder.action_id]
    assert held.rolled_back_actions == []
    assert folder.rollback_status is RollbackStatus.MANUAL_REQUIRED
    assert dispatcher.calls_for("delete_file") == []

    coordinator.start_workflow("wf-2")
    other = coordinator.record_action("wf-2", "create_folder", "drive", {}, {"id": "fold-2"})
    confirmed = await coordinator.rollback(
        "wf-2",
        RollbackOptions(require_confirmation=True, confirmed_actions={other.action_id}),
    )
    assert confirmed.rolled_back_actions == [other.action_id]
    assert dispatcher.calls_for("delete_file", "drive") == [{"fileId": "fold-2"}]

    coordinator.start_workflow("wf-3")
    unconfirmed = coordinator.record_action("wf-3", "create_folder", "drive", {}, {"id": "fold-3"})
    plain = await coordinator.rollback("wf-3")
    assert plain.rolled_back_actions == [unconfirmed.action_id]


@pytest.mark.asyncio
async def test_partially_reversible_is_flagged_lossy():
    dispatcher = InMemoryDispatcher()
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    action = coordinator.record_action(
        "wf-1",
        "append_data",
        "sheets",
        {"spreadsheetId": "s1", "sheetName": "Log"},
        {"updatedRange": "Log!A5:C5", "startRow": 5},
    )

    result = await coordinator.rollback("wf-1")

    assert result.lossy_actions == [action.action_id]
    assert dispatcher.calls == [
        ("delete_rows", "sheets", {"spreadsheetId": "s1", "sheetName": "Log", "startRow": 5, "numRows": 1})
    ]


@pytest.mark.asyncio
async def test_failed_undo_is_recorded_and_rollback_continues():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("delete_card", "trello", PermanentError("gone", status=400))
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    first = coordinator.record_action("wf-1", "create_page", "notion", {}, {"id": "page-1"})
    second = coordinator.record_action("wf-1", "create_task", "trello", {}, {"id": "card-1"})

    result = await coordinator.rollback("wf-1")

    assert result.failed_actions == [second.action_id]
    assert result.failures[0].error_type == "validation"
    assert result.rolled_back_actions == [first.action_id]
    assert coordinator.get_ledger("wf-1").status is LedgerStatus.PARTIALLY_ROLLED_BACK


@pytest.mark.asyncio
async def test_stop_on_failure_aborts_remaining():
    dispatcher = InMemoryDispatcher()
    dispatcher.fail_next("delete_card", "trello", PermanentError("gone", status=400))
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    first = coordinator.record_action("wf-1", "create_page", "notion", {}, {"id": "page-1"})
    coordinator.record_action("wf-1", "create_task", "trello", {}, {"id": "card-1"})

    result = await coordinator.rollback("wf-1", RollbackOptions(stop_on_failure=True))

    assert result.failed_count == 1
    assert result.rolled_back_count == 0
    assert first.rollback_status is RollbackStatus.PENDING


@pytest.mark.asyncio
async def test_undo_timeout_is_a_failure():
    dispatcher = InMemoryDispatcher()

    async def hang(params):
        await asyncio.sleep(1)

    dispatcher.register("delete_card", "trello", hang)
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    coordinator.record_action("wf-1", "create_task", "trello", {}, {"id": "card-1"})

    result = await coordinator.rollback("wf-1", RollbackOptions(timeout_per_action=0.01))

    assert result.failed_count == 1
    assert "timed out" in result.failures[0].error


@pytest.mark.asyncio
async def test_missing_undo_mapping_fails_entry():
    coordinator = _coordinator()
    coordinator.start_workflow("wf-1")
    action = coordinator.record_action("wf-1", "create_widget", "acme", {}, {"id": "w"})
    assert action.reversibility is Reversibility.REVERSIBLE
    assert action.undo is None

    result = await coordinator.rollback("wf-1")
    assert result.failed_actions == [action.action_id]


@pytest.mark.asyncio
async def test_unknown_workflow_reports_not_run():
    result = await _coordinator().rollback("nope")
    assert result.ran is False
    assert result.success is False


@pytest.mark.asyncio
async def test_dispatcher_rules_take_precedence():
    dispatcher = InMemoryDispatcher(
        undo_rules=[
            UndoRule(
                target="trello",
                action_types=["create_task"],
                undo_action="archive_card",
                params={"id": "$result.id"},
            )
        ]
    )
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    coordinator.record_action("wf-1", "create_task", "trello", {}, {"id": "c1"})

    await coordinator.rollback("wf-1")

    assert dispatcher.calls == [("archive_card", "trello", {"id": "c1"})]


@pytest.mark.asyncio
async def test_explicit_undo_makes_action_reversible():
    dispatcher = InMemoryDispatcher()
    coordinator = _coordinator(dispatcher)
    coordinator.start_workflow("wf-1")
    action = coordinator.record_action(
        "wf-1",
        "update_sheet",
        "sheets",
        {},
        {"row": 7},
        undo=UndoOperation(action="delete_rows", target="sheets", params={"row": 7}),
    )
    assert action.reversibility is Reversibility.REVERSIBLE

    result = await coordinator.rollback("wf-1")
    assert result.success is True
    assert dispatcher.calls == [("delete_rows", "sheets", {"row": 7})]


def test_validate_workflow_rollback_plan():
    coordinator = _coordinator()
    coordinator.start_workflow("wf-1")
    coordinator.record_action("wf-1", "create_task", "trello", {}, {"id": "a"})
    coordinator.record_action("wf-1", "append_data", "sheets", {}, {"updatedRange": "A1"})
    coordinator.record_action("wf-1", "upload_file", "drive", {}, {"id": "f"})
    coordinator.record_action("wf-1", "send_notification", "slack", {}, {})

    plan = coordinator.validate_workflow_rollback("wf-1")

    assert plan.can_rollback is True
    assert plan.total_actions == 4
    assert plan.reversible_actions == 1
    assert plan.partially_reversible_actions == 1
    assert plan.requires_confirmation == 1
    assert plan.non_reversible_actions == 1
    assert plan.estimated_duration == 7.0
    assert len(plan.warnings) == 3
    assert coordinator.estimate_rollback_duration("wf-1") == 7.0
    assert coordinator.estimate_rollback_duration("missing") is None


@pytest.mark.asyncio
async def test_history_statistics_and_export():
    coordinator = _coordinator(history_limit=2)
    for n in range(3):
        wf = f"wf-{n}"
        coordinator.start_workflow(wf)
        coordinator.record_action(wf, "send_notification", "slack", {}, {})
        await coordinator.rollback(wf)
        coordinator.complete_workflow(wf)

    history = coordinator.history()
    assert [l.workflow_id for l in history] == ["wf-2", "wf-1"]
    assert coordinator.get_ledger("wf-2") is history[0]
    actions = coordinator.workflow_history("wf-2")
    assert [a.action_type for a in actions] == ["send_notification"]
    assert actions[0].rollback_status.value == "manual_required"
    assert coordinator.workflow_history("wf-0") == []
    assert len(coordinator.workflows_requiring_manual_intervention()) == 2

    stats = coordinator.statistics()
    assert stats["total_workflows"] == 2
    assert stats["active_workflows"] == 0
    assert stats["manual_interventions"] == 2

    export = coordinator.export_for_debugging("wf-1")
    assert export["workflow"]["workflow_id"] == "wf-1"
    assert coordinator.clear_history() == 2
    assert coordinator.history() == []
