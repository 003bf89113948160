"""Base interface for action dispatchers."""

from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any, Dict, Sequence

if TYPE_CHECKING:
    from ..rollback.undo import UndoRule


class BaseDispatcher(metaclass=abc.ABCMeta):
    """Runs one action against one target system.

    Implementations raise :class:`actflow.errors.ActionError` (or a subclass)
    on failure so the retry engine can classify it. ``undo_rules`` lets a
    dispatcher describe how its own actions are compensated; the rollback
    coordinator prefers these over its built-in table.
    """

    undo_rules: Sequence["UndoRule"] = ()

    async def connect(self) -> None:
        """Open connections to the target systems (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Release connections (no-op by default)."""
        pass

    @abc.abstractmethod
    async def execute(self, action_type: str, target: str, params: Dict[str, Any]) -> Any:
        """Perform ``action_type`` on ``target`` and return its result."""
        raise NotImplementedError
