"""Command line interface for validating and running actflow workflows."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml
from pydantic import ValidationError

from actflow.config import load_config
from actflow.contracts import load_workflow
from actflow.engine import create_engine
from actflow.models import WorkflowResult
from actflow.persistence import get_repository
from actflow.validation import validate_workflow

app = typer.Typer(help="CLI for actflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for validating and running workflows")
config_app = typer.Typer(help="Commands for inspecting configuration")

app.add_typer(workflow_app, name="workflow")
app.add_typer(config_app, name="config")


@app.callback()
def main() -> None:
    """actflow CLI entry point."""
    pass


def _load_or_exit(path: Path):
    if not path.exists():
        typer.secho(f"Workflow file not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return load_workflow(path)
    except ValidationError as exc:
        typer.secho(f"Could not parse {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _print_result(result: WorkflowResult) -> None:
    colour = typer.colors.GREEN if result.success else typer.colors.RED
    typer.secho(f"Workflow {result.workflow_id}: {result.status.value}", fg=colour)
    typer.echo(f"Execution ID: {result.execution_id}")
    for step_id, step in result.step_results.items():
        line = f"- {step_id}: {step.status.value}"
        if step.cached:
            line += " (cached)"
        if step.error:
            line += f" - {step.error}"
        typer.echo(line)
    if result.error:
        typer.echo(f"Error: {result.error}")
    if result.rollback is not None:
        rb = result.rollback
        typer.echo(
            f"Rollback: {rb.rolled_back_count} rolled back, {rb.failed_count} failed, "
            f"{rb.manual_count} need manual intervention"
        )
    for manual in result.manual_steps:
        typer.echo(manual.describe())


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Check a workflow definition file without running it.

    Verifies unique step ids, that every dependency exists and is declared
    earlier, and that there are no cycles.

    Example:
        actflow workflow validate ./workflows/invoice.json
    """
    definition = _load_or_exit(path)
    errors = validate_workflow(definition)
    if errors:
        typer.secho(f"Workflow {definition.id} is invalid:", fg=typer.colors.RED)
        for error in errors:
            typer.echo(f"- {error}")
        raise typer.Exit(code=1)
    typer.secho(
        f"Workflow {definition.id} is valid ({len(definition.steps)} steps)",
        fg=typer.colors.GREEN,
    )


@workflow_app.command("run")
def workflow_run(
    path: Path,
    context: Optional[str] = typer.Option(
        None, help="JSON object used as the initial workflow context"
    ),
    signal_id: Optional[str] = typer.Option(
        None, help="Signal id used to derive idempotency keys"
    ),
    config_path: Optional[str] = typer.Option(
        None, "--config", help="Path to a config YAML file"
    ),
) -> None:
    """
    Execute a workflow definition file with the configured dispatcher.

    Prints each step's status and, on failure, the rollback summary and
    any manual intervention required. Exits with code 1 unless the
    workflow completed.

    Example:
        actflow workflow run ./workflows/invoice.json --context '{"vendor": "Acme"}'
    """
    definition = _load_or_exit(path)
    errors = validate_workflow(definition)
    if errors:
        typer.secho(f"Workflow {definition.id} is invalid:", fg=typer.colors.RED)
        for error in errors:
            typer.echo(f"- {error}")
        raise typer.Exit(code=1)

    initial: Dict[str, Any] = {}
    if context:
        try:
            initial = json.loads(context)
        except json.JSONDecodeError as exc:
            typer.secho(f"Invalid --context JSON: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        if not isinstance(initial, dict):
            typer.secho("--context must be a JSON object", fg=typer.colors.RED)
            raise typer.Exit(code=1)

    engine = create_engine(load_config(config_path))

    async def _run() -> WorkflowResult:
        async with engine:
            return await engine.execute_workflow(definition, initial, signal_id=signal_id)

    result = asyncio.run(_run())
    _print_result(result)
    if not result.success:
        raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List recorded workflow executions with their current status.

    Example:
        actflow workflow list
        # Output: 3f0c...    invoice-1718000000000    completed
    """
    repo = get_repository()
    executions = asyncio.run(repo.list_executions())
    if not executions:
        typer.echo("No workflows found")
        return
    for ex in executions:
        typer.echo(f"{ex.execution_id}\t{ex.workflow_id}\t{ex.status}")


@workflow_app.command("show")
def workflow_show(execution_id: str) -> None:
    """
    Show the status, context and step history of one execution.

    Example:
        actflow workflow show 3f0c2a9e-...
    """
    repo = get_repository()
    ex = asyncio.run(repo.get_execution(execution_id))
    if ex is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {ex.workflow_id} ({ex.execution_id}): {ex.status}")
    if ex.context:
        typer.echo(f"Context: {json.dumps(ex.context, default=str)}")
    for step in ex.steps:
        typer.echo(
            f"- {step.step_id}: {step.status or 'running'}"
            + (
                f" ({step.started_at} -> {step.completed_at})"
                if step.started_at or step.completed_at
                else ""
            )
            + (f" - {step.error}" if step.error else "")
        )


@config_app.command("show")
def config_show(
    config_path: Optional[str] = typer.Option(
        None, "--config", help="Path to a config YAML file"
    ),
) -> None:
    """Print the effective configuration as YAML."""
    config = load_config(config_path)
    typer.echo(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False))


if __name__ == "__main__":  # pragma: no cover - manual invocation
    app()
