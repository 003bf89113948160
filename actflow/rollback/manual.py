"""Human-readable instructions for actions that cannot be undone automatically."""

from __future__ import annotations

import json
from typing import List

from .models import ExecutedAction, ManualIntervention


def _instructions(action: ExecutedAction) -> tuple[str, List[str]]:
    params = action.original_params
    result = action.result if isinstance(action.result, dict) else {}

    if action.action_type in ("send_notification", "send_message"):
        steps = ["Inform the recipients that the action was rolled back."]
        if result.get("channel") or params.get("channel"):
            steps.append(f"Channel: {result.get('channel') or params.get('channel')}")
        message = params.get("message")
        if message:
            steps.append(f'Original message: "{str(message)[:100]}"')
        return "This notification/message cannot be deleted automatically.", steps

    if action.action_type == "send_email":
        steps = ["Send a follow-up email explaining the situation."]
        if params.get("to"):
            steps.append(f"Recipient: {params['to']}")
        return "An email cannot be recalled.", steps

    if action.action_type == "trigger_webhook":
        steps = ["Contact the webhook recipient so they can handle the rollback."]
        if params.get("url"):
            steps.append(f"Webhook URL: {params['url']}")
        return "A triggered webhook cannot be reversed.", steps

    if action.action_type == "log_action":
        return (
            "Log entries are kept for audit purposes.",
            ["Add a note indicating this workflow was rolled back."],
        )

    return (
        "This action is not reversible.",
        [
            "Review the action and take appropriate steps.",
            f"Result: {json.dumps(action.result, default=str)}",
        ],
    )


def manual_intervention_for(action: ExecutedAction) -> ManualIntervention:
    """Describe what a person must do to compensate a non-reversible action."""
    reason, steps = _instructions(action)
    return ManualIntervention(
        action_id=action.action_id,
        action_type=action.action_type,
        target=action.target,
        executed_at=action.executed_at,
        reason=reason,
        instructions=steps,
    )


def confirmation_needed_for(action: ExecutedAction) -> ManualIntervention:
    """Describe a destructive undo that is waiting for confirmation."""
    result = action.result if isinstance(action.result, dict) else {}
    resource_id = result.get("id") or result.get("fileId") or "unknown"
    steps = [f"Confirm and delete {action.action_type} result with ID {resource_id}."]
    if action.undo is not None:
        steps.append(
            f"Undo call: {action.undo.target}.{action.undo.action} {json.dumps(action.undo.params, default=str)}"
        )
    return ManualIntervention(
        action_id=action.action_id,
        action_type=action.action_type,
        target=action.target,
        executed_at=action.executed_at,
        reason="Undoing this action is destructive and requires confirmation.",
        instructions=steps,
    )
