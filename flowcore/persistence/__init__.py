"""Persistence layer for flowcore workflows, events and executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowcoreConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    Edge,
    EventRecord,
    EventState,
    ExecutionRecord,
    ExecutionState,
    Node,
    QueueItemRecord,
    WorkflowDefinition,
)
from .repository import EventClaim, WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowcoreConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``FLOWCORE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWCORE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryWorkflowRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("Postgres support not available (install asyncpg)")
        return PostgresWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "Edge",
    "EventClaim",
    "EventRecord",
    "EventState",
    "ExecutionRecord",
    "ExecutionState",
    "Node",
    "QueueItemRecord",
    "WorkflowDefinition",
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "get_repository",
]
