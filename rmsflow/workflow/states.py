"""Workflow state enumerations shared by every maker-checker entity."""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class AuthState(IntEnum):
    UNAUTHORIZED = 0
    APPROVED = 1
    DENIED = 2


class DeleteStatus(IntEnum):
    ACTIVE = 0
    DELETED = 1


class ActionType(IntEnum):
    INSERT = 1
    UPDATE = 2
    DELETE = 3


class AuthLevel(IntEnum):
    LEVEL1 = 1


class Decision(IntEnum):
    """Checker decision on a pending change."""

    APPROVE = 1
    DENY = 2

    @classmethod
    def parse(cls, value: Any) -> "Decision":
        """Accept the enum, its integer value or a case-insensitive name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and not value.strip().isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown decision: {value}") from None
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise ValueError(f"Unknown decision: {value!r}") from None
