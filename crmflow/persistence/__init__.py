"""Persistence layer for crmflow records."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CrmFlowConfig, load_config
from .filters import Predicate, Where, get_path
from .inmemory import InMemoryDataStore
from .repository import (
    CONTACTS,
    EXECUTION_STEPS,
    EXECUTIONS,
    RUN_CLAIMS,
    WORKFLOWS,
    DataStore,
)
from .sqlite import SQLiteDataStore

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresDataStore
except ImportError:  # pragma: no cover - optional dependency
    PostgresDataStore = None  # type: ignore

_store_instance: DataStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[CrmFlowConfig] = None
) -> DataStore:
    """Factory function to obtain a data store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``CRMFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CRMFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _store_instance = InMemoryDataStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteDataStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresDataStore is None:
            raise RuntimeError("Postgres support not available")
        _store_instance = PostgresDataStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "CONTACTS",
    "EXECUTIONS",
    "EXECUTION_STEPS",
    "RUN_CLAIMS",
    "WORKFLOWS",
    "DataStore",
    "InMemoryDataStore",
    "SQLiteDataStore",
    "PostgresDataStore",
    "Predicate",
    "Where",
    "get_path",
    "get_store",
]
