"""Persistence layer for sagaflow executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SagaflowConfig, load_config
from .inmemory import InMemoryExecutionStore
from .models import Execution, StepClaim, StepRun, TriggerInfo
from .repository import ExecutionStore
from .sqlite import SQLiteExecutionStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresExecutionStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresExecutionStore = None  # type: ignore

_repository_instance: ExecutionStore | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> ExecutionStore:
    """Factory function to obtain an execution store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``SAGAFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SAGAFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryExecutionStore()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteExecutionStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresExecutionStore is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresExecutionStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached store so the next call builds a fresh one."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "Execution",
    "StepClaim",
    "StepRun",
    "TriggerInfo",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "SQLiteExecutionStore",
    "PostgresExecutionStore",
    "get_repository",
    "reset_repository",
]
