"""Where workflow snapshots are kept between processes."""

from __future__ import annotations

from typing import Optional

from ..config import TicketflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def repository_for_url(database_url: Optional[str]) -> WorkflowRepository:
    """Open the repository ``database_url`` points at.

    ``sqlite://<path>`` and ``postgres(ql)://...`` are understood; no URL
    keeps snapshots in memory for the life of the process.
    """
    if not database_url:
        return InMemoryWorkflowRepository()
    scheme, _, rest = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(rest)
    if scheme in ("postgres", "postgresql"):
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(config: Optional[TicketflowConfig] = None) -> WorkflowRepository:
    """Repository for ``config.database_url``; every call opens a new one."""
    config = config or load_config()
    return repository_for_url(config.database_url)


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "repository_for_url",
]
