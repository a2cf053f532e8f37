"""Maker-checker transition rules.

Pure functions with no I/O. Maker actions always produce an unauthorized
record; checker actions move an unauthorized record to approved or denied.
There are no terminal states: any record can be resubmitted by a maker.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel

from ..audit import AuditSnapshot
from ..errors import DomainError, FieldError, ValidationFailed
from .record import WorkflowRecord
from .states import ActionType, AuthLevel, AuthState, Decision, DeleteStatus

DEFAULT_REMARKS_MAX_LENGTH = 200


class CheckerOutcome(BaseModel):
    """What an authorize decision does to the stored record."""

    state: AuthState
    promote_pending: bool = False
    mark_deleted: bool = False
    auth_id: str
    auth_dt: datetime
    remarks: Optional[str] = None

    @property
    def auth_trans_dt(self) -> date:
        return self.auth_dt.date()


def maker_stamp(
    action: ActionType,
    actor: AuditSnapshot,
    now: datetime,
    remarks: Optional[str] = None,
    auth_level: int = AuthLevel.LEVEL1,
) -> WorkflowRecord:
    """Envelope written by a create, update or delete."""
    return WorkflowRecord(
        auth_state=AuthState.UNAUTHORIZED,
        is_deleted=DeleteStatus.ACTIVE,
        auth_level=auth_level,
        maker_id=actor.actor_id,
        action_dt=now,
        trans_dt=now.date(),
        ip_address=actor.origin_address,
        action_type=action,
        auth_id=None,
        auth_dt=None,
        auth_trans_dt=None,
        remarks=remarks,
    )


def validate_remarks(
    remarks: Optional[str], max_length: int = DEFAULT_REMARKS_MAX_LENGTH
) -> Optional[str]:
    """Strip remarks and enforce the length limit."""
    if remarks is None:
        return None
    remarks = remarks.strip()
    if len(remarks) > max_length:
        raise ValidationFailed(
            "Validation failed",
            [
                FieldError(
                    field="remarks",
                    message=f"Remarks cannot exceed {max_length} characters",
                    value=remarks,
                )
            ],
        )
    return remarks or None


def validate_decision(
    decision: Decision,
    remarks: Optional[str],
    max_length: int = DEFAULT_REMARKS_MAX_LENGTH,
) -> Optional[str]:
    """Check the checker's input and return the normalized remarks.

    Raises:
        ValidationFailed: a deny without remarks, or remarks that are too long.
    """
    remarks = validate_remarks(remarks, max_length)
    if decision is Decision.DENY and not remarks:
        raise ValidationFailed(
            "Validation failed",
            [FieldError(field="remarks", message="Remarks are required when denying")],
        )
    return remarks


def ensure_authorizable(
    record: WorkflowRecord, checker_id: str, allow_self: bool = False
) -> None:
    """Raise :class:`DomainError` unless ``checker_id`` may decide on ``record``."""
    if record.auth_state is not AuthState.UNAUTHORIZED:
        raise DomainError(
            f"Record is not pending authorization (state {record.auth_state.name})"
        )
    if not allow_self and record.maker_id and record.maker_id == checker_id:
        raise DomainError("A maker cannot authorize their own change")


def checker_stamp(
    record: WorkflowRecord,
    decision: Decision,
    actor: AuditSnapshot,
    now: datetime,
    remarks: Optional[str] = None,
) -> CheckerOutcome:
    """Outcome of ``decision`` on the pending ``record``.

    Approving an update promotes the pending values, approving a delete
    soft-deletes the row, denying leaves the authorized values untouched.
    """
    approve = decision is Decision.APPROVE
    return CheckerOutcome(
        state=AuthState.APPROVED if approve else AuthState.DENIED,
        promote_pending=approve and record.action_type is ActionType.UPDATE,
        mark_deleted=approve and record.action_type is ActionType.DELETE,
        auth_id=actor.actor_id,
        auth_dt=now,
        remarks=remarks,
    )
