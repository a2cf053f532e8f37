from __future__ import annotations

import logging

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..db.models import NotificationLog
from ..unit_of_work import UnitOfWork
from .routines import RoutineRegistry

logger = logging.getLogger(__name__)


class Store:
    """Async database engine plus the routines registered against it."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.database_url = database_url
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine: AsyncEngine = create_async_engine(
            database_url, echo=echo, future=True, connect_args=connect_args
        )
        self.metadata = MetaData()
        self.routines = RoutineRegistry()

    async def init_schema(self) -> None:
        """Create entity tables and the notification log if missing."""
        async with self.engine.begin() as conn:
            await conn.run_sync(self.metadata.create_all)
            await conn.run_sync(NotificationLog.metadata.create_all)
        logger.info(f"Schema ready on {self.engine.url.render_as_string(hide_password=True)}")

    def unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self)

    async def dispose(self) -> None:
        await self.engine.dispose()
