"""Persistence layer for phaseflow runtime state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PhaseflowConfig, load_config
from .inmemory import InMemoryStateStore
from .models import (
    Checkpoint,
    ContextWrite,
    ExecutionContext,
    GateVerdict,
    InstanceStatus,
    PhaseExecution,
    PhaseStatus,
    QualityGateResult,
    Transition,
    VersionLock,
    WorkflowInstance,
)
from .repository import StateStore
from .sqlite import SQLiteStateStore

_repository_instance: StateStore | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[PhaseflowConfig] = None
) -> StateStore:
    """Factory function to obtain a state store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``PHASEFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("PHASEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryStateStore()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteStateStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresStateStore

        _repository_instance = PostgresStateStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "Checkpoint",
    "ContextWrite",
    "ExecutionContext",
    "GateVerdict",
    "InMemoryStateStore",
    "InstanceStatus",
    "PhaseExecution",
    "PhaseStatus",
    "QualityGateResult",
    "SQLiteStateStore",
    "StateStore",
    "Transition",
    "VersionLock",
    "WorkflowInstance",
    "get_repository",
]
