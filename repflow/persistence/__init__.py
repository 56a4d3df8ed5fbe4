"""Run ledger: durable runs and memoized step results."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RepflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import ScheduleWatermark
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def open_repository(database_url: Optional[str]) -> WorkflowRepository:
    """Ledger backend for ``database_url``; ``None`` means in-memory.

    Driver-qualified URLs such as ``postgresql+asyncpg://`` or
    ``sqlite+aiosqlite:///`` are accepted so the ledger and the row store
    can share one setting.
    """
    if not database_url:
        return InMemoryWorkflowRepository()

    scheme, sep, rest = database_url.partition("://")
    if not sep:
        raise ValueError(f"Unsupported database backend: {database_url}")
    dialect = scheme.split("+", 1)[0]
    if dialect == "sqlite":
        return SQLiteWorkflowRepository(rest)
    if dialect in ("postgres", "postgresql"):
        return PostgresWorkflowRepository(f"postgresql://{rest}")
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[RepflowConfig] = None
) -> WorkflowRepository:
    """Process-wide run ledger.

    The URL comes from ``database_url``, then ``REPFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, then ``config.database_url``. The first repository
    built without explicit arguments is reused by later calls.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("REPFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    _repository_instance = open_repository(database_url)
    return _repository_instance


def reset_repository() -> None:
    """Forget the process-wide ledger (tests and CLI reconfiguration)."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "InMemoryWorkflowRepository",
    "PostgresWorkflowRepository",
    "SQLiteWorkflowRepository",
    "ScheduleWatermark",
    "WorkflowRepository",
    "get_repository",
    "open_repository",
    "reset_repository",
]
