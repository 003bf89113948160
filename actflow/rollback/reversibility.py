"""Static reversibility classification of action types."""

from __future__ import annotations

from typing import Mapping, Optional

from ..constants import ACTION_REVERSIBILITY
from .models import Reversibility

_PREFIX_RULES: tuple[tuple[str, Reversibility], ...] = (
    ("delete_", Reversibility.CONFIRMATION_REQUIRED),
    ("remove_", Reversibility.CONFIRMATION_REQUIRED),
    ("create_", Reversibility.REVERSIBLE),
    ("send_", Reversibility.NON_REVERSIBLE),
    ("notify_", Reversibility.NON_REVERSIBLE),
)


def classify_reversibility(
    action_type: str, overrides: Optional[Mapping[str, str]] = None
) -> Reversibility:
    """Return the reversibility class of ``action_type``.

    Exact entries win over prefix rules; unknown action types are treated as
    non reversible.
    """
    if overrides and action_type in overrides:
        return Reversibility(overrides[action_type])
    known = ACTION_REVERSIBILITY.get(action_type)
    if known is not None:
        return Reversibility(known)
    for prefix, reversibility in _PREFIX_RULES:
        if action_type.startswith(prefix):
            return reversibility
    return Reversibility.NON_REVERSIBLE
