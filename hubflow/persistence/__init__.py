"""Persistence layer for hubflow workflow instances."""

from __future__ import annotations

from typing import Optional

from ..config import HubflowConfig, load_config
from .inmemory import InMemoryInstanceStore
from .sqlite import SQLiteInstanceStore
from .store import WorkflowInstanceStore
from .transfer import EXPORT_FORMAT, export_instance, import_instance

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresInstanceStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresInstanceStore = None  # type: ignore


def get_store(
    database_url: Optional[str] = None, config: Optional[HubflowConfig] = None
) -> WorkflowInstanceStore:
    """Create a workflow instance store.

    The backend is selected from ``database_url``, falling back to the
    configured URL (``load_config`` already applies ``HUBFLOW_DATABASE_URL``
    and ``DATABASE_URL``). Without a database an in-memory store is returned.
    Every call returns a new store.
    """

    if database_url is None:
        config = config or load_config()
        database_url = config.database_url

    if not database_url:
        return InMemoryInstanceStore()

    if database_url.startswith("sqlite://"):
        return SQLiteInstanceStore(database_url.replace("sqlite://", "", 1))
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresInstanceStore is None:
            raise RuntimeError("Postgres support not available")
        return PostgresInstanceStore(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "EXPORT_FORMAT",
    "InMemoryInstanceStore",
    "PostgresInstanceStore",
    "SQLiteInstanceStore",
    "WorkflowInstanceStore",
    "export_instance",
    "get_store",
    "import_instance",
]
