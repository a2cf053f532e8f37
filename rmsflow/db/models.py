from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationLog(SQLModel, table=True):
    """One downstream notification attempt made after an authorization."""

    __tablename__ = "notification_log"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    entity: str = Field(index=True)
    entity_keys: dict = Field(sa_column=Column(JSON))
    change_kind: str
    success: bool = Field(default=False, index=True)
    message: Optional[str] = None
    attempted_at: datetime = Field(
        default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
