"""Structural validation of workflow definitions."""

from __future__ import annotations

from typing import Dict, List

from .contracts import WorkflowDefinition


def _has_cycle(current: str, path: List[str], visited: set, deps: Dict[str, List[str]]) -> bool:
    if current in path:
        return True
    if current in visited:
        return False

    visited.add(current)
    path.append(current)

    for dependency in deps.get(current, []):
        if _has_cycle(dependency, path, visited, deps):
            return True

    path.remove(current)
    return False


def validate_workflow(definition: WorkflowDefinition) -> List[str]:
    """Return a list of human-readable problems; empty when the definition is valid."""

    errors: List[str] = []

    if not definition.id:
        errors.append("Workflow ID is required")
    if not definition.name:
        errors.append("Workflow name is required")
    if not definition.steps:
        errors.append("Workflow must have at least one step")
        return errors

    seen: set[str] = set()
    declared: set[str] = set()
    all_ids = {step.id for step in definition.steps}

    for index, step in enumerate(definition.steps):
        label = step.id or f"#{index}"
        if not step.id:
            errors.append(f"Step {label}: ID is required")
        elif step.id in seen:
            errors.append(f"Duplicate step ID: {step.id}")
        seen.add(step.id)

        if not step.action:
            errors.append(f"Step {label}: action is required")
        if not step.target:
            errors.append(f"Step {label}: target is required")
        if step.retry_count is not None and step.retry_count < 0:
            errors.append(f"Step {label}: retry count must not be negative")
        if step.timeout is not None and step.timeout <= 0:
            errors.append(f"Step {label}: timeout must be positive")

        for dep in step.depends_on:
            if dep == step.id:
                errors.append(f"Step {label}: cannot depend on itself")
            elif dep not in all_ids:
                errors.append(f"Step {label}: depends on unknown step {dep}")
            elif dep not in declared:
                errors.append(f"Step {label}: depends on {dep}, which is declared later")

        declared.add(step.id)

    deps = {step.id: list(step.depends_on) for step in definition.steps if step.id}
    visited: set = set()
    for step_id in deps:
        if _has_cycle(step_id, [], visited, deps):
            errors.append(f"Circular dependency detected involving step {step_id}")
            break

    return errors
