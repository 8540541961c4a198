"""Persistence layer for approval workflow state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import PostgateConfig, load_config
from .inmemory import InMemoryApprovalStore
from .repository import (
    ApprovalStore,
    AssignmentRepository,
    CommentRepository,
    HistoryRepository,
    RevisionRepository,
    WorkflowRepository,
)
from .sqlite import SQLiteApprovalStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresApprovalStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresApprovalStore = None  # type: ignore


def get_store(
    database_url: Optional[str] = None, config: Optional[PostgateConfig] = None
) -> ApprovalStore:
    """Build an approval store for the configured backend.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``POSTGATE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.

    Every call returns a new store; callers own it and pass it to the
    services that need it.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("POSTGATE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        return InMemoryApprovalStore()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteApprovalStore(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresApprovalStore is None:
            raise RuntimeError("Postgres support not available")
        return PostgresApprovalStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ApprovalStore",
    "AssignmentRepository",
    "CommentRepository",
    "HistoryRepository",
    "RevisionRepository",
    "WorkflowRepository",
    "InMemoryApprovalStore",
    "SQLiteApprovalStore",
    "PostgresApprovalStore",
    "get_store",
]
