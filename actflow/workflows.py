"""Pre-built business workflows.

Each ``*_workflow`` function returns a :class:`WorkflowDefinition`; the
matching ``handle_*`` coroutine builds and executes it on an engine.
Placeholders such as ``$SHEETS_LOG_SPREADSHEET_ID`` resolve from the
initial context, so deployment settings can be passed in as ``settings``.
"""

from __future__ import annotations

import time
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from .contracts import RollbackSpec, WorkflowDefinition, WorkflowStep
from .engine import WorkflowEngine
from .models import WorkflowResult


def _workflow_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}"


def _today() -> str:
    return date.today().isoformat()


# ----------------------------------------------------------------------
# Invoice
def invoice_workflow(
    file_name: str,
    content: bytes | str,
    vendor: str,
    amount: float,
    due_date: str,
    spreadsheet_id: Optional[str] = None,
) -> WorkflowDefinition:
    """File the invoice in Drive, log it to the tracking sheet, notify accounting."""
    return WorkflowDefinition(
        id=_workflow_id("invoice"),
        name="Handle Invoice",
        description="File invoice in Drive, update tracking sheet, and notify accounting",
        rollback_on_failure=True,
        steps=[
            WorkflowStep(
                id="file-drive",
                name="File Invoice in Drive",
                action="file_document",
                target="drive",
                params={"name": file_name, "content": content, "type": "INVOICE", "autoInfer": True},
                rollback=RollbackSpec(
                    action="delete_file", target="drive", params={"fileId": "$file-drive.fileId"}
                ),
            ),
            WorkflowStep(
                id="update-sheet",
                name="Update Invoice Tracking Sheet",
                action="update_sheet",
                target="sheets",
                params={
                    "spreadsheetId": spreadsheet_id or "$SHEETS_LOG_SPREADSHEET_ID",
                    "operation": "APPEND_ROW",
                    "sheetName": "Invoices",
                    "values": [
                        [_today(), vendor, amount, due_date, "Pending", "$file-drive.webViewLink"]
                    ],
                },
                depends_on=["file-drive"],
            ),
            WorkflowStep(
                id="notify-accounting",
                name="Notify Accounting Team",
                action="send_notification",
                target="slack",
                params={
                    "channel": "accounting",
                    "title": "New Invoice Received",
                    "message": f"Invoice from {vendor} for ${amount}",
                    "priority": "Medium",
                    "fields": [
                        {"title": "Vendor", "value": vendor},
                        {"title": "Amount", "value": f"${amount}"},
                        {"title": "Due Date", "value": due_date},
                        {"title": "File", "value": "$file-drive.webViewLink"},
                    ],
                },
                depends_on=["file-drive", "update-sheet"],
                optional=True,
            ),
        ],
    )


async def handle_invoice(
    engine: WorkflowEngine,
    file_name: str,
    content: bytes | str,
    vendor: str,
    amount: float,
    due_date: str,
    spreadsheet_id: Optional[str] = None,
    *,
    settings: Optional[Mapping[str, Any]] = None,
    signal_id: Optional[str] = None,
) -> WorkflowResult:
    definition = invoice_workflow(file_name, content, vendor, amount, due_date, spreadsheet_id)
    context = {**(settings or {}), "vendor": vendor, "amount": amount, "dueDate": due_date}
    return await engine.execute_workflow(definition, context, signal_id=signal_id)


# ----------------------------------------------------------------------
# Bug report
def bug_report_workflow(
    title: str,
    description: str,
    severity: str,
    reporter: str,
    list_id: Optional[str] = None,
    spreadsheet_id: Optional[str] = None,
) -> WorkflowDefinition:
    """Create a Trello card, then notify developers and track it in a sheet."""
    return WorkflowDefinition(
        id=_workflow_id("bug"),
        name="Handle Bug Report",
        description="Create Trello card, notify dev team, and track in sheet",
        rollback_on_failure=True,
        steps=[
            WorkflowStep(
                id="create-card",
                name="Create Trello Card",
                action="create_task",
                target="trello",
                params={
                    "name": f"[BUG] {title}",
                    "description": f"{description}\n\n**Severity:** {severity}\n**Reporter:** {reporter}",
                    "listId": list_id or "$TRELLO_BACKLOG_LIST",
                    "labels": [severity.lower(), "bug"],
                },
                rollback=RollbackSpec(
                    action="delete_card", target="trello", params={"cardId": "$create-card.id"}
                ),
            ),
            WorkflowStep(
                id="notify-devs",
                name="Notify Development Team",
                action="send_notification",
                target="slack",
                params={
                    "channel": "engineering",
                    "title": "New Bug Report",
                    "message": title,
                    "priority": severity,
                    "fields": [
                        {"title": "Severity", "value": severity},
                        {"title": "Reporter", "value": reporter},
                        {"title": "Description", "value": description},
                        {"title": "Trello Card", "value": "$create-card.url"},
                    ],
                },
                depends_on=["create-card"],
                optional=True,
            ),
            WorkflowStep(
                id="track-sheet",
                name="Add to Bug Tracking Sheet",
                action="update_sheet",
                target="sheets",
                params={
                    "spreadsheetId": spreadsheet_id or "$SHEETS_LOG_SPREADSHEET_ID",
                    "operation": "APPEND_ROW",
                    "sheetName": "Bugs",
                    "values": [[_today(), title, severity, reporter, "Open", "$create-card.url"]],
                },
                depends_on=["create-card"],
                optional=True,
            ),
        ],
    )


async def handle_bug_report(
    engine: WorkflowEngine,
    title: str,
    description: str,
    severity: str,
    reporter: str,
    list_id: Optional[str] = None,
    spreadsheet_id: Optional[str] = None,
    *,
    settings: Optional[Mapping[str, Any]] = None,
    signal_id: Optional[str] = None,
) -> WorkflowResult:
    definition = bug_report_workflow(title, description, severity, reporter, list_id, spreadsheet_id)
    context = {
        **(settings or {}),
        "title": title,
        "description": description,
        "severity": severity,
        "reporter": reporter,
    }
    return await engine.execute_workflow(definition, context, signal_id=signal_id)


# ----------------------------------------------------------------------
# Meeting
def meeting_workflow(
    title: str,
    meeting_date: str,
    meeting_time: str,
    duration: int,
    attendees: List[str],
    agenda: str,
    database_id: Optional[str] = None,
) -> WorkflowDefinition:
    """Create a Notion task for the meeting and notify attendees.

    Nothing is rolled back here: the only non-optional step is the first one.
    """
    attendee_list = ", ".join(attendees)
    return WorkflowDefinition(
        id=_workflow_id("meeting"),
        name="Handle Meeting",
        description="Create Notion task and notify attendees",
        rollback_on_failure=False,
        steps=[
            WorkflowStep(
                id="create-notion",
                name="Create Notion Task",
                action="create_task",
                target="notion",
                params={
                    "databaseId": database_id or "$NOTION_DATABASE_ID",
                    "title": title,
                    "properties": {
                        "Date": meeting_date,
                        "Time": meeting_time,
                        "Duration": f"{duration} minutes",
                        "Attendees": attendee_list,
                        "Type": "Meeting",
                    },
                    "content": agenda,
                },
            ),
            WorkflowStep(
                id="notify-attendees",
                name="Notify Attendees",
                action="send_notification",
                target="slack",
                params={
                    "channel": "general",
                    "title": "Meeting Scheduled",
                    "message": title,
                    "priority": "Low",
                    "fields": [
                        {"title": "Date", "value": meeting_date},
                        {"title": "Time", "value": meeting_time},
                        {"title": "Duration", "value": f"{duration} minutes"},
                        {"title": "Attendees", "value": attendee_list},
                        {"title": "Agenda", "value": agenda},
                        {"title": "Notion Task", "value": "$create-notion.url"},
                    ],
                },
                depends_on=["create-notion"],
                optional=True,
            ),
        ],
    )


async def handle_meeting(
    engine: WorkflowEngine,
    title: str,
    meeting_date: str,
    meeting_time: str,
    duration: int,
    attendees: List[str],
    agenda: str,
    database_id: Optional[str] = None,
    *,
    settings: Optional[Mapping[str, Any]] = None,
    signal_id: Optional[str] = None,
) -> WorkflowResult:
    definition = meeting_workflow(
        title, meeting_date, meeting_time, duration, attendees, agenda, database_id
    )
    context: Dict[str, Any] = {
        **(settings or {}),
        "title": title,
        "date": meeting_date,
        "time": meeting_time,
        "duration": duration,
        "attendees": list(attendees),
        "agenda": agenda,
    }
    return await engine.execute_workflow(definition, context, signal_id=signal_id)


# ----------------------------------------------------------------------
# Report
def report_workflow(
    file_name: str,
    content: bytes | str,
    report_type: str,
    stakeholders: List[str],
    due_date: str,
    list_id: Optional[str] = None,
) -> WorkflowDefinition:
    """File the report in Drive, open a review task, notify stakeholders."""
    return WorkflowDefinition(
        id=_workflow_id("report"),
        name="Handle Report",
        description="File report in Drive, create review task, and notify stakeholders",
        rollback_on_failure=True,
        steps=[
            WorkflowStep(
                id="file-report",
                name="File Report in Drive",
                action="file_document",
                target="drive",
                params={"name": file_name, "content": content, "type": "REPORT", "autoInfer": True},
                rollback=RollbackSpec(
                    action="delete_file", target="drive", params={"fileId": "$file-report.fileId"}
                ),
            ),
            WorkflowStep(
                id="create-review-task",
                name="Create Review Task",
                action="create_task",
                target="trello",
                params={
                    "name": f"Review: {report_type}",
                    "description": (
                        f"Please review the {report_type}\n\n**Due Date:** {due_date}"
                        "\n**File:** $file-report.webViewLink"
                    ),
                    "listId": list_id or "$TRELLO_TODO_LIST",
                    "dueDate": due_date,
                    "labels": ["review", "report"],
                },
                depends_on=["file-report"],
            ),
            WorkflowStep(
                id="notify-stakeholders",
                name="Notify Stakeholders",
                action="send_notification",
                target="slack",
                params={
                    "channel": "leadership",
                    "title": "New Report Available",
                    "message": report_type,
                    "priority": "High",
                    "fields": [
                        {"title": "Report Type", "value": report_type},
                        {"title": "Due Date", "value": due_date},
                        {"title": "Stakeholders", "value": ", ".join(stakeholders)},
                        {"title": "File", "value": "$file-report.webViewLink"},
                        {"title": "Review Task", "value": "$create-review-task.url"},
                    ],
                },
                depends_on=["file-report", "create-review-task"],
                optional=True,
            ),
        ],
    )


async def handle_report(
    engine: WorkflowEngine,
    file_name: str,
    content: bytes | str,
    report_type: str,
    stakeholders: List[str],
    due_date: str,
    list_id: Optional[str] = None,
    *,
    settings: Optional[Mapping[str, Any]] = None,
    signal_id: Optional[str] = None,
) -> WorkflowResult:
    definition = report_workflow(file_name, content, report_type, stakeholders, due_date, list_id)
    context = {
        **(settings or {}),
        "reportType": report_type,
        "stakeholders": list(stakeholders),
        "dueDate": due_date,
    }
    return await engine.execute_workflow(definition, context, signal_id=signal_id)


PREBUILT_WORKFLOWS = {
    "invoice": invoice_workflow,
    "bug_report": bug_report_workflow,
    "meeting": meeting_workflow,
    "report": report_workflow,
}
