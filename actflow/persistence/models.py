"""Data models for persisted execution state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class StepRecord(BaseModel):
    """Record of an individual step execution."""

    id: Optional[int] = None
    execution_id: str
    step_id: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: Optional[str] = None
    output: Any = None
    error: Optional[str] = None


class ExecutionInstance(BaseModel):
    """Persisted workflow execution."""

    execution_id: str
    workflow_id: str
    definition: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] | None = None
    status: str = "pending"
    steps: list[StepRecord] = Field(default_factory=list)
