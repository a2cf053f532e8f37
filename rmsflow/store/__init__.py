"""Backing store for rmsflow."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RmsFlowConfig, load_config
from .engine import Store
from .routines import Routine, RoutineContext, RoutineParameter, RoutineRegistry

_store_instance: Store | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[RmsFlowConfig] = None
) -> Store:
    """Factory function to obtain the backing store.

    The URL is taken from ``database_url``, the ``RMSFLOW_DATABASE_URL`` or
    ``DATABASE_URL`` environment variables, or the loaded configuration.
    Only async SQLAlchemy URLs are accepted (``sqlite+aiosqlite://`` and
    ``postgresql+asyncpg://``).
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("RMSFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database.url
    )

    if database_url.startswith("sqlite://"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        database_url = "postgresql+asyncpg://" + database_url.split("://", 1)[1]
    elif not (
        database_url.startswith("sqlite+aiosqlite://")
        or database_url.startswith("postgresql+asyncpg://")
    ):
        raise ValueError(f"Unsupported database backend: {database_url}")

    _store_instance = Store(database_url, echo=config.database.echo)
    return _store_instance


__all__ = [
    "Routine",
    "RoutineContext",
    "RoutineParameter",
    "RoutineRegistry",
    "Store",
    "get_store",
]
