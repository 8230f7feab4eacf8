"""Persistence layer for flowsentry runs and monitoring state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowSentryConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    ExecutionRun,
    ExecutionStatus,
    ImportExecution,
    ImportSchedule,
    NotificationRecord,
    ProcessVariable,
    RunStatus,
    SchedulerExecution,
    StepExecution,
    StepStatus,
    SyncResource,
    SyncStatus,
    WorkflowDefinition,
)
from .repository import WorkflowRepository
from .sql import SQLWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def async_database_url(database_url: str) -> str:
    """Map plain database URLs onto their async driver equivalents."""

    if database_url.startswith(("sqlite+aiosqlite://", "postgresql+asyncpg://")):
        return database_url
    if database_url.startswith("sqlite:///"):
        return database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    if database_url.startswith("sqlite://"):
        # bare "sqlite://path" form
        path = database_url.replace("sqlite://", "", 1)
        return f"sqlite+aiosqlite:///{path}"
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return database_url.replace(prefix, "postgresql+asyncpg://", 1)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowSentryConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWSENTRY_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWSENTRY_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
    else:
        _repository_instance = SQLWorkflowRepository(async_database_url(database_url))
    return _repository_instance


__all__ = [
    "ExecutionRun",
    "ExecutionStatus",
    "ImportExecution",
    "ImportSchedule",
    "InMemoryWorkflowRepository",
    "NotificationRecord",
    "ProcessVariable",
    "RunStatus",
    "SQLWorkflowRepository",
    "SchedulerExecution",
    "StepExecution",
    "StepStatus",
    "SyncResource",
    "SyncStatus",
    "WorkflowDefinition",
    "WorkflowRepository",
    "async_database_url",
    "get_repository",
]
