"""Persistence layer for flowsmith workflow instances."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowsmithConfig, load_config
from .artifacts import (
    ArtifactStore,
    FileArtifactStore,
    InMemoryArtifactStore,
    get_artifact_store,
)
from .inmemory import InMemoryStateStore
from .postgres import PostgresStateStore
from .repository import StateStore
from .sqlite import SQLiteStateStore

_store_instance: StateStore | None = None


def get_state_store(
    database_url: Optional[str] = None, config: Optional[FlowsmithConfig] = None
) -> StateStore:
    """Factory function to obtain a state store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWSMITH_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWSMITH_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _store_instance = InMemoryStateStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteStateStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _store_instance = PostgresStateStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "ArtifactStore",
    "FileArtifactStore",
    "InMemoryArtifactStore",
    "InMemoryStateStore",
    "PostgresStateStore",
    "SQLiteStateStore",
    "StateStore",
    "get_artifact_store",
    "get_state_store",
]
