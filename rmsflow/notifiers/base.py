"""Base interface for downstream change notifications."""

from __future__ import annotations

import abc
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel


class ChangeKind(str, Enum):
    """Kind of authorized change reported downstream."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def from_action(cls, action: int) -> "ChangeKind":
        """Map a workflow action type (1, 2, 3) to its change kind."""
        return {1: cls.INSERT, 2: cls.UPDATE, 3: cls.DELETE}[int(action)]


class NotificationAck(BaseModel):
    """Outcome reported by a notifier; notifiers never raise."""

    success: bool
    message: str = ""


class BaseNotifier(metaclass=abc.ABCMeta):
    """Abstract downstream collaborator notified after an authorization commits.

    Calls are not idempotency-aware and are not retried.
    """

    async def close(self) -> None:
        """Release resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def notify(
        self,
        entity: str,
        entity_keys: Mapping[str, Any],
        change_kind: ChangeKind,
        endpoint: Optional[str] = None,
    ) -> NotificationAck:
        """Report an authorized change."""
        raise NotImplementedError
