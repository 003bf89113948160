"""Example showing an invoice workflow that fails halfway and is rolled back."""

import asyncio
import logging

from actflow import InMemoryDispatcher, PermanentError, WorkflowEngine
from actflow.workflows import handle_invoice


async def main():
    logging.basicConfig(level=logging.INFO)

    dispatcher = InMemoryDispatcher()
    dispatcher.register(
        "file_document",
        "drive",
        lambda params: {"fileId": "file-123", "webViewLink": "https://drive.example/file-123"},
    )
    # The tracking sheet rejects the row, so the filed invoice is deleted again
    dispatcher.fail_next("update_sheet", "sheets", PermanentError("Invalid range", status=400))

    async with WorkflowEngine(dispatcher) as engine:
        result = await handle_invoice(
            engine,
            "invoice-042.pdf",
            b"%PDF-1.7",
            "Acme Corp",
            1250.0,
            "2026-11-30",
            settings={"SHEETS_LOG_SPREADSHEET_ID": "sheet-abc"},
            signal_id="email-8812",
        )

    print(f"Status: {result.status.value}")
    print(f"Failed step: {result.failed_step}")
    print(f"Undo calls: {dispatcher.calls_for('delete_file', 'drive')}")


if __name__ == "__main__":
    asyncio.run(main())
