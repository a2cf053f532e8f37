from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Mapping

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlmodel import select

from .models import NotificationLog


class NotificationLogDB:
    """Async helper recording downstream notification outcomes."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine) as session:
            yield session

    async def record(
        self,
        entity: str,
        entity_keys: Mapping[str, Any],
        change_kind: str,
        success: bool,
        message: str | None = None,
    ) -> NotificationLog:
        row = NotificationLog(
            entity=entity,
            entity_keys={k: _jsonable(v) for k, v in entity_keys.items()},
            change_kind=change_kind,
            success=success,
            message=message,
        )
        async with self.session() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
        return row

    async def list_entries(self, failed_only: bool = False) -> list[NotificationLog]:
        stmt = select(NotificationLog).order_by(NotificationLog.attempted_at)
        if failed_only:
            stmt = stmt.where(NotificationLog.success == False)  # noqa: E712
        async with self.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
