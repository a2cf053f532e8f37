"""In-memory notifier for testing."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel

from .base import BaseNotifier, ChangeKind, NotificationAck


class SentNotification(BaseModel):
    entity: str
    entity_keys: Dict[str, Any]
    change_kind: ChangeKind
    endpoint: Optional[str] = None


class InMemoryNotifier(BaseNotifier):
    """Records every notification; set ``fail_with`` to simulate an outage."""

    def __init__(self, fail_with: Optional[str] = None) -> None:
        self.sent: List[SentNotification] = []
        self.fail_with = fail_with

    async def notify(
        self,
        entity: str,
        entity_keys: Mapping[str, Any],
        change_kind: ChangeKind,
        endpoint: Optional[str] = None,
    ) -> NotificationAck:
        self.sent.append(
            SentNotification(
                entity=entity,
                entity_keys=dict(entity_keys),
                change_kind=change_kind,
                endpoint=endpoint,
            )
        )
        if self.fail_with is not None:
            return NotificationAck(success=False, message=self.fail_with)
        return NotificationAck(success=True, message="Operation completed successfully")
