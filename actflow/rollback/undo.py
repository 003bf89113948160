"""Mapping from executed actions to their compensating calls.

Rules are plain data. A rule matches on ``target`` and ``action_types`` and
describes the undo call through a parameter template whose values may
reference the original call:

* ``$result.<path>`` - a field of the action's result
* ``$params.<path>`` - a field of the parameters the action was called with

``|`` separates alternatives, the first one that resolves wins. Values that
do not start with ``$`` are literals. ``requires`` lists references that must
resolve for the rule to apply.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from ..params import lookup
from .models import ExecutedAction, Reversibility, UndoOperation


class UndoRule(BaseModel):
    target: str
    action_types: List[str]
    undo_action: str
    undo_target: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    requires: List[str] = Field(default_factory=list)
    requires_confirmation: bool = False

    def matches(self, action: ExecutedAction) -> bool:
        return action.target == self.target and action.action_type in self.action_types


DEFAULT_UNDO_RULES: List[UndoRule] = [
    UndoRule(
        target="trello",
        action_types=["create_task", "create_card"],
        undo_action="delete_card",
        params={"cardId": "$result.id|$result.cardId"},
    ),
    UndoRule(
        target="trello",
        action_types=["update_task"],
        undo_action="update_card",
        params={
            "cardId": "$result.id|$result.cardId|$params.cardId",
            "name": "$params.previousName",
            "description": "$params.previousDescription",
        },
    ),
    UndoRule(
        target="drive",
        action_types=["upload_file", "file_document", "create_folder"],
        undo_action="delete_file",
        params={"fileId": "$result.id|$result.fileId"},
        requires_confirmation=True,
    ),
    UndoRule(
        target="drive",
        action_types=["move_file"],
        undo_action="move_file",
        params={
            "fileId": "$result.id|$result.fileId|$params.fileId",
            "folderId": "$params.previousFolderId",
        },
        requires=["$params.previousFolderId"],
    ),
    UndoRule(
        target="sheets",
        action_types=["append_data"],
        undo_action="delete_rows",
        params={
            "spreadsheetId": "$params.spreadsheetId",
            "sheetName": "$params.sheetName",
            "startRow": "$result.startRow",
            "numRows": "$result.numRows|1",
        },
        requires=["$result.updatedRange"],
    ),
    UndoRule(
        target="sheets",
        action_types=["update_cell"],
        undo_action="update_cell",
        params={
            "spreadsheetId": "$params.spreadsheetId",
            "range": "$params.range",
            "value": "$params.previousValue",
        },
        requires=["$params.previousValue"],
    ),
    UndoRule(
        target="notion",
        action_types=["create_page"],
        undo_action="delete_page",
        params={"pageId": "$result.id|$result.pageId"},
    ),
]


def _resolve_template(value: Any, scope: Dict[str, Any]) -> Any:
    if isinstance(value, dict):
        return {k: _resolve_template(v, scope) for k, v in value.items()}
    if not isinstance(value, str) or not value.startswith("$"):
        return value
    for alternative in value.split("|"):
        alternative = alternative.strip()
        if not alternative.startswith("$"):
            return int(alternative) if alternative.isdigit() else alternative
        resolved = lookup(alternative, scope)
        if resolved is not None:
            return resolved
    return None


def build_undo(action: ExecutedAction, rules: Iterable[UndoRule]) -> Optional[UndoOperation]:
    """Return the undo call for ``action`` from the first matching rule."""
    scope = {
        "result": action.result if isinstance(action.result, dict) else {},
        "params": action.original_params,
    }
    for rule in rules:
        if not rule.matches(action):
            continue
        if any(lookup(ref, scope) is None for ref in rule.requires):
            continue
        return UndoOperation(
            action=rule.undo_action,
            target=rule.undo_target or action.target,
            params=_resolve_template(rule.params, scope),
            requires_confirmation=rule.requires_confirmation,
            lossy=action.reversibility is Reversibility.PARTIALLY_REVERSIBLE,
        )
    return None


def combine_rules(*groups: Optional[Sequence[Any]]) -> List[UndoRule]:
    """Flatten rule groups in priority order, validating dict entries."""
    combined: List[UndoRule] = []
    for group in groups:
        for rule in group or ():
            combined.append(rule if isinstance(rule, UndoRule) else UndoRule.model_validate(rule))
    return combined
