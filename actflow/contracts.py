"""Workflow definition contracts."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class _Contract(BaseModel):
    # JSON definitions use camelCase; Python callers may use either spelling.
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, ser_json_bytes="base64"
    )


class RollbackSpec(_Contract):
    """Explicit undo operation for a step.

    ``params`` is a template: ``$stepId.field`` references are resolved
    against the workflow context when the step succeeds, so the step's own
    result is available as ``$<step id>.<field>``.
    """

    action: str
    target: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


class WorkflowStep(_Contract):
    """Defines one step in a workflow."""

    id: str
    name: str = ""
    action: str
    target: str
    params: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    optional: bool = False
    retry_count: Optional[int] = None
    timeout: Optional[float] = None
    rollback: Optional[RollbackSpec] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class WorkflowDefinition(_Contract):
    """Ordered, dependent steps executed as one pseudo-transaction."""

    id: str
    name: str
    description: str = ""
    steps: List[WorkflowStep] = Field(default_factory=list)
    rollback_on_failure: bool = True

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_json(self, indent: Optional[int] = 2) -> str:
        """Serialize definition to JSON."""
        return self.model_dump_json(by_alias=True, indent=indent)

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowDefinition":
        """Deserialize definition from JSON."""
        return cls.model_validate_json(data)


class ActionRequest(BaseModel):
    """A single logical request to run an action against a target."""

    action_type: str
    target: str
    params: Dict[str, Any] = Field(default_factory=dict)
    signal_id: Optional[str] = None


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Read a workflow definition from a JSON file."""
    text = Path(path).read_text(encoding="utf-8")
    definition = WorkflowDefinition.from_json(text)
    logger.debug(f"Loaded workflow {definition.id} from {path}")
    return definition


def save_workflow(definition: WorkflowDefinition, path: str | Path) -> None:
    """Write a workflow definition as JSON."""
    Path(path).write_text(definition.to_json(), encoding="utf-8")
    logger.debug(f"Saved workflow {definition.id} to {path}")
