"""Example showing duplicate signals being absorbed by the idempotency gate."""

import asyncio

from actflow import InMemoryDispatcher, WorkflowEngine
from actflow.workflows import bug_report_workflow


async def main():
    dispatcher = InMemoryDispatcher()
    engine = WorkflowEngine(dispatcher)

    definition = bug_report_workflow(
        "Login page crashes", "Stack trace attached", "High", "sam", "list-1", "sheet-1"
    )
    for _ in range(3):
        # Same signal delivered three times by the upstream webhook
        result = await engine.execute_workflow(definition, signal_id="webhook-77")
        print(result.status.value, [r.cached for r in result.step_results.values()])

    stats = await engine.gate.stats()
    print(f"Trello cards created: {len(dispatcher.calls_for('create_task', 'trello'))}")
    print(f"Duplicates prevented: {stats.duplicates_prevented}")


if __name__ == "__main__":
    asyncio.run(main())
