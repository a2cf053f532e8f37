from datetime import date, datetime, timezone

import pytest

from rmsflow.audit import AuditSnapshot, RequestAuditContext
from rmsflow.errors import DomainError, InvalidArgument, ValidationFailed
from rmsflow.workflow import (
    ActionType,
    AuthState,
    Decision,
    DeleteStatus,
    WorkflowRecord,
)
from rmsflow.workflow.machine import (
    checker_stamp,
    ensure_authorizable,
    maker_stamp,
    validate_decision,
    validate_remarks,
)

NOW = datetime(2024, 3, 5, 9, 30, tzinfo=timezone.utc)
MAKER = AuditSnapshot(actor_id="maker1", origin_address="10.0.0.1")
CHECKER = AuditSnapshot(actor_id="checker1", origin_address="10.0.0.2")


def _pending(action: ActionType) -> WorkflowRecord:
    return maker_stamp(action, MAKER, NOW)


def test_enum_values_are_stable():
    assert [int(a) for a in ActionType] == [1, 2, 3]
    assert [int(s) for s in AuthState] == [0, 1, 2]
    assert [int(d) for d in DeleteStatus] == [0, 1]
    assert [int(d) for d in Decision] == [1, 2]


def test_decision_parse():
    assert Decision.parse("approve") is Decision.APPROVE
    assert Decision.parse("DENY") is Decision.DENY
    assert Decision.parse(1) is Decision.APPROVE
    assert Decision.parse(Decision.DENY) is Decision.DENY
    with pytest.raises(ValueError):
        Decision.parse("maybe")
    with pytest.raises(ValueError):
        Decision.parse(None)
    with pytest.raises(ValueError):
        Decision.parse(5)


@pytest.mark.parametrize("action", list(ActionType))
def test_maker_actions_always_produce_unauthorized(action):
    record = _pending(action)
    assert record.auth_state is AuthState.UNAUTHORIZED
    assert record.is_deleted is DeleteStatus.ACTIVE
    assert record.action_type is action
    assert record.maker_id == "maker1"
    assert record.ip_address == "10.0.0.1"
    assert record.action_dt == NOW
    assert record.trans_dt == date(2024, 3, 5)
    assert record.auth_id is None and record.auth_dt is None
    assert record.is_pending


def test_approve_update_promotes_pending():
    outcome = checker_stamp(_pending(ActionType.UPDATE), Decision.APPROVE, CHECKER, NOW)
    assert outcome.state is AuthState.APPROVED
    assert outcome.promote_pending
    assert not outcome.mark_deleted
    assert outcome.auth_id == "checker1"
    assert outcome.auth_trans_dt == date(2024, 3, 5)


def test_approve_delete_soft_deletes():
    outcome = checker_stamp(_pending(ActionType.DELETE), Decision.APPROVE, CHECKER, NOW)
    assert outcome.state is AuthState.APPROVED
    assert outcome.mark_deleted
    assert not outcome.promote_pending


@pytest.mark.parametrize("action", list(ActionType))
def test_deny_keeps_authorized_values(action):
    outcome = checker_stamp(_pending(action), Decision.DENY, CHECKER, NOW, "wrong prefix")
    assert outcome.state is AuthState.DENIED
    assert not outcome.promote_pending
    assert not outcome.mark_deleted
    assert outcome.remarks == "wrong prefix"


def test_only_pending_records_are_authorizable():
    approved = _pending(ActionType.INSERT).model_copy(update={"auth_state": AuthState.APPROVED})
    with pytest.raises(DomainError, match="not pending"):
        ensure_authorizable(approved, "checker1")

    denied = _pending(ActionType.INSERT).model_copy(update={"auth_state": AuthState.DENIED})
    with pytest.raises(DomainError, match="DENIED"):
        ensure_authorizable(denied, "checker1")

    ensure_authorizable(_pending(ActionType.INSERT), "checker1")


def test_maker_cannot_authorize_own_change():
    record = _pending(ActionType.UPDATE)
    with pytest.raises(DomainError, match="own change"):
        ensure_authorizable(record, "maker1")
    ensure_authorizable(record, "maker1", allow_self=True)


def test_deny_requires_remarks():
    with pytest.raises(ValidationFailed) as excinfo:
        validate_decision(Decision.DENY, "   ")
    assert excinfo.value.errors[0].field == "remarks"
    assert validate_decision(Decision.DENY, " no evidence ") == "no evidence"
    assert validate_decision(Decision.APPROVE, None) is None


def test_remarks_length_limit():
    assert validate_remarks("x" * 200) == "x" * 200
    with pytest.raises(ValidationFailed) as excinfo:
        validate_remarks("x" * 201)
    assert "200" in excinfo.value.errors[0].message
    with pytest.raises(ValidationFailed):
        validate_decision(Decision.APPROVE, "abcdef", max_length=5)


def test_audit_snapshot_requires_actor():
    snapshot = AuditSnapshot.capture(RequestAuditContext(actor_id="u1", origin_address="1.2.3.4"))
    assert snapshot == AuditSnapshot(actor_id="u1", origin_address="1.2.3.4")
    with pytest.raises(InvalidArgument):
        AuditSnapshot.capture(RequestAuditContext(actor_id=""))


def test_workflow_record_from_row_ignores_business_columns():
    record = WorkflowRecord.from_row(
        {
            "xchg_code": "XKLS",
            "auth_state": 2,
            "is_deleted": 0,
            "maker_id": "maker1",
            "action_type": 2,
            "remarks": "bad",
            "row_version": 4,
        }
    )
    assert record.auth_state is AuthState.DENIED
    assert record.action_type is ActionType.UPDATE
    assert record.row_version == 4
    assert record.is_active and not record.is_pending
