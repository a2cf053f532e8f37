"""The audit and state envelope carried by every workflow-managed row."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from .states import ActionType, AuthLevel, AuthState, DeleteStatus

ENVELOPE_FIELDS = (
    "auth_state",
    "is_deleted",
    "auth_level",
    "maker_id",
    "action_dt",
    "trans_dt",
    "ip_address",
    "action_type",
    "auth_id",
    "auth_dt",
    "auth_trans_dt",
    "remarks",
    "row_version",
)


class WorkflowRecord(BaseModel):
    """Maker and checker stamps plus the authorization state of a row."""

    auth_state: AuthState = AuthState.UNAUTHORIZED
    is_deleted: DeleteStatus = DeleteStatus.ACTIVE
    auth_level: int = AuthLevel.LEVEL1
    maker_id: Optional[str] = None
    action_dt: Optional[datetime] = None
    trans_dt: Optional[date] = None
    ip_address: Optional[str] = None
    action_type: Optional[ActionType] = None
    auth_id: Optional[str] = None
    auth_dt: Optional[datetime] = None
    auth_trans_dt: Optional[date] = None
    remarks: Optional[str] = None
    row_version: int = 1

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WorkflowRecord":
        return cls.model_validate({k: row[k] for k in ENVELOPE_FIELDS if k in row})

    @property
    def is_pending(self) -> bool:
        return self.auth_state is AuthState.UNAUTHORIZED

    @property
    def is_active(self) -> bool:
        return self.is_deleted is DeleteStatus.ACTIVE
