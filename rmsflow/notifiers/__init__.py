"""Notifier factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RmsFlowConfig, load_config
from .base import BaseNotifier, ChangeKind, NotificationAck
from .inmemory import InMemoryNotifier


def get_notifier(
    backend: Optional[str] = None, config: Optional[RmsFlowConfig] = None
) -> Optional[BaseNotifier]:
    """Factory function to get the configured downstream notifier.

    Returns ``None`` for the ``none`` backend.
    """

    config = config or load_config()
    backend = (
        backend
        or os.getenv("RMSFLOW_NOTIFIER")
        or config.notifier.backend
    ).lower()

    if backend == "none":
        return None
    elif backend == "inmemory":
        return InMemoryNotifier()
    elif backend == "http":
        from .http import HttpNotifier

        if not config.notifier.base_url:
            raise ValueError("notifier.base_url is required for the http backend")
        return HttpNotifier(
            config.notifier.base_url, timeout_seconds=config.notifier.timeout_seconds
        )
    else:
        raise ValueError(f"Unsupported notifier backend: {backend}")


__all__ = [
    "BaseNotifier",
    "ChangeKind",
    "InMemoryNotifier",
    "NotificationAck",
    "get_notifier",
]
