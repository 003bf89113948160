"""Persistence layer for workflow executions."""

from __future__ import annotations

from typing import Callable, Dict, Optional

from ..config import ActflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import ExecutionInstance, StepRecord
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

_repository_instance: WorkflowRepository | None = None


def _open_sqlite(url: str) -> WorkflowRepository:
    return SQLiteWorkflowRepository(url.split("://", 1)[1])


def _open_postgres(url: str) -> WorkflowRepository:
    if PostgresWorkflowRepository is None:
        raise RuntimeError("Postgres support not available (install actflow[postgres])")
    return PostgresWorkflowRepository(url)


_BACKENDS: Dict[str, Callable[[str], WorkflowRepository]] = {
    "sqlite": _open_sqlite,
    "postgres": _open_postgres,
    "postgresql": _open_postgres,
}


def open_repository(database_url: str) -> WorkflowRepository:
    """Build a fresh repository for ``database_url`` based on its scheme."""
    scheme = database_url.split("://", 1)[0].lower() if "://" in database_url else ""
    opener = _BACKENDS.get(scheme)
    if opener is None:
        raise ValueError(f"Unsupported database backend: {database_url}")
    return opener(database_url)


def get_repository(
    database_url: Optional[str] = None, config: Optional[ActflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow repository.

    ``database_url`` wins over ``config.database_url`` (which already carries
    the ``ACTFLOW_DATABASE_URL`` / ``DATABASE_URL`` overrides). Without either
    a bounded in-memory repository is used. The instance is reused until a
    URL or config is passed explicitly.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = database_url or (config or load_config()).database_url
    _repository_instance = open_repository(url) if url else InMemoryWorkflowRepository()
    return _repository_instance


__all__ = [
    "ExecutionInstance",
    "StepRecord",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "open_repository",
]
