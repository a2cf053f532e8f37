import asyncio
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import text

from rmsflow import catalog
from rmsflow.audit import RequestAuditContext
from rmsflow.command import Command
from rmsflow.config import RmsFlowConfig, WorkflowConfig
from rmsflow.db import NotificationLogDB
from rmsflow.errors import (
    Cancelled,
    DomainError,
    InvalidArgument,
    NotFound,
    ValidationFailed,
)
from rmsflow.executor import CommandExecutor
from rmsflow.notifiers import BaseNotifier, ChangeKind, InMemoryNotifier
from rmsflow.paging import PageRequest, SortDirection, SortSpec
from rmsflow.params import ParameterList
from rmsflow.store import Store
from rmsflow.workflow import (
    ActionType,
    AuthState,
    Decision,
    DeleteStatus,
    MakerCheckerService,
    WorkflowSummaryService,
)

NOW = datetime(2024, 3, 5, 9, 30, tzinfo=timezone.utc)
MAKER = RequestAuditContext(actor_id="maker1", origin_address="10.0.0.1")
OTHER_MAKER = RequestAuditContext(actor_id="maker2", origin_address="10.0.0.3")
CHECKER = RequestAuditContext(actor_id="checker1", origin_address="10.0.0.2")
HOLDING = {"branch_code": "001", "client_code": "C1", "stock_code": "1155"}


async def _setup(tmp_path, entity=catalog.EXCHANGE, notifier=None, **workflow):
    store = Store(f"sqlite+aiosqlite:///{tmp_path / 'rms.db'}")
    catalog.install(store)
    await store.init_schema()
    config = RmsFlowConfig(workflow=WorkflowConfig(**workflow))
    service = MakerCheckerService(
        store, entity, notifier=notifier, config=config, clock=lambda: NOW
    )
    return store, service


class CountingAudit:
    def __init__(self, actor_id: str) -> None:
        self.actor_id = actor_id
        self.calls = 0

    def current_actor_id(self) -> str:
        self.calls += 1
        return self.actor_id

    def current_origin_address(self) -> str:
        return "10.0.0.9"


class ExplodingNotifier(BaseNotifier):
    async def notify(self, entity, entity_keys, change_kind, endpoint=None):
        raise RuntimeError("ledger unreachable")


@pytest.mark.asyncio
async def test_create_list_and_approve(tmp_path):
    store, service = await _setup(tmp_path)

    created = await service.create({"xchg_code": "XKLS", "xchg_prefix": 1}, MAKER)
    assert created.workflow.auth_state is AuthState.UNAUTHORIZED
    assert created.workflow.action_type is ActionType.INSERT
    assert created.workflow.maker_id == "maker1"
    assert created.workflow.ip_address == "10.0.0.1"
    assert created.workflow.trans_dt == date(2024, 3, 5)

    listed = await service.list()
    assert listed.total_count == 1
    assert listed.items[0].data.xchg_code == "XKLS"

    queue = await service.list_workflow(AuthState.UNAUTHORIZED)
    assert [v.data.xchg_code for v in queue.items] == ["XKLS"]

    result = await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)
    assert result.state is AuthState.APPROVED
    assert result.rows_affected == 1
    assert result.notification is None
    assert result.record.workflow.auth_id == "checker1"
    assert result.record.workflow.auth_trans_dt == date(2024, 3, 5)

    view = await service.get({"xchg_code": "XKLS"})
    assert view.workflow.auth_state is AuthState.APPROVED
    assert view.data.xchg_prefix == 1
    assert (await service.list_workflow()).total_count == 0
    await store.dispose()


@pytest.mark.asyncio
async def test_update_then_deny_keeps_authorized_values(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS", "xchg_prefix": 1}, MAKER)
    await service.authorize({"xchg_code": "XKLS"}, "approve", CHECKER)

    pending = await service.update({"xchg_code": "XKLS"}, {"xchg_prefix": 9}, MAKER)
    assert pending.workflow.auth_state is AuthState.UNAUTHORIZED
    assert pending.workflow.action_type is ActionType.UPDATE
    assert pending.data.xchg_prefix == 1
    assert pending.pending.xchg_prefix == 9

    listed = await service.list()
    assert listed.items[0].data.xchg_prefix == 1
    queue = await service.list_workflow()
    assert queue.items[0].effective.xchg_prefix == 9

    result = await service.authorize(
        {"xchg_code": "XKLS"}, Decision.DENY, CHECKER, remarks="insufficient evidence"
    )
    assert result.state is AuthState.DENIED

    view = await service.get({"xchg_code": "XKLS"})
    assert view.workflow.auth_state is AuthState.DENIED
    assert view.workflow.remarks == "insufficient evidence"
    assert view.data.xchg_prefix == 1
    assert view.pending is None

    denied = await service.list_workflow(AuthState.DENIED)
    assert [v.data.xchg_code for v in denied.items] == ["XKLS"]
    await store.dispose()


@pytest.mark.asyncio
async def test_update_then_approve_promotes_pending_values(tmp_path):
    store, service = await _setup(tmp_path, entity=catalog.ORDER_GROUP)
    await service.create(
        {"group_code": 7, "group_desc": "Margin", "date_from": datetime(2024, 1, 1)}, MAKER
    )
    await service.authorize({"group_code": 7}, Decision.APPROVE, CHECKER)

    await service.update(
        {"group_code": "7"},
        {"group_desc": "Margin accounts", "date_from": datetime(2024, 1, 1),
         "date_to": datetime(2024, 12, 31)},
        MAKER,
        remarks="extend to year end",
    )
    result = await service.authorize({"group_code": 7}, Decision.APPROVE, CHECKER)
    assert result.state is AuthState.APPROVED

    view = await service.get({"group_code": 7})
    assert view.data.group_desc == "Margin accounts"
    assert view.data.date_to == datetime(2024, 12, 31)
    assert view.pending is None
    assert view.workflow.row_version == 4
    await store.dispose()


@pytest.mark.asyncio
async def test_partial_update_keeps_fields_not_supplied(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS", "xchg_prefix": 1, "broker_code": "B77"}, MAKER)
    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)

    pending = await service.update({"xchg_code": "XKLS"}, {"xchg_prefix": 9}, MAKER)
    assert pending.pending.broker_code == "B77"
    assert pending.pending.xchg_prefix == 9

    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)
    view = await service.get({"xchg_code": "XKLS"})
    assert view.data.xchg_prefix == 9
    assert view.data.broker_code == "B77"

    # A model only contributes the fields set on it.
    changed = catalog.Exchange(xchg_code="XKLS", xchg_prefix=4)
    await service.update({"xchg_code": "XKLS"}, changed, MAKER)
    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)
    view = await service.get({"xchg_code": "XKLS"})
    assert view.data.xchg_prefix == 4
    assert view.data.broker_code == "B77"

    with pytest.raises(ValidationFailed) as excinfo:
        await service.update({"xchg_code": "XKLS"}, {"no_such_field": 1}, MAKER)
    assert [e.field for e in excinfo.value.errors] == ["no_such_field"]
    with pytest.raises(ValidationFailed):
        await service.update({"xchg_code": "XKLS"}, {"broker_code": "B" * 11}, MAKER)
    with pytest.raises(InvalidArgument, match="no fields to update"):
        await service.update({"xchg_code": "XKLS"}, {"xchg_code": "XKLS"}, MAKER)
    assert (await service.get({"xchg_code": "XKLS"})).workflow.auth_state is AuthState.APPROVED
    await store.dispose()


@pytest.mark.asyncio
async def test_partial_update_without_required_field(tmp_path):
    store, service = await _setup(tmp_path, entity=catalog.ORDER_GROUP)
    await service.create(
        {"group_code": 7, "group_desc": "Margin", "group_type": "M"}, MAKER
    )
    await service.authorize({"group_code": 7}, Decision.APPROVE, CHECKER)

    pending = await service.update({"group_code": 7}, {"date_to": datetime(2024, 12, 31)}, MAKER)
    assert pending.pending.group_desc == "Margin"
    assert pending.pending.group_type == "M"

    await service.authorize({"group_code": 7}, Decision.APPROVE, CHECKER)
    view = await service.get({"group_code": 7})
    assert view.data.group_desc == "Margin"
    assert view.data.date_to == datetime(2024, 12, 31)
    await store.dispose()


@pytest.mark.asyncio
async def test_update_after_denial_resubmits(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS", "xchg_prefix": 1}, MAKER)
    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)
    await service.update({"xchg_code": "XKLS"}, {"xchg_prefix": 9}, MAKER)
    await service.authorize({"xchg_code": "XKLS"}, Decision.DENY, CHECKER, remarks="no")

    resubmitted = await service.update({"xchg_code": "XKLS"}, {"xchg_prefix": 8}, MAKER)
    assert resubmitted.workflow.auth_state is AuthState.UNAUTHORIZED
    assert resubmitted.workflow.action_type is ActionType.UPDATE
    assert resubmitted.workflow.auth_id is None
    assert resubmitted.workflow.auth_dt is None
    assert resubmitted.data.xchg_prefix == 1
    assert resubmitted.pending.xchg_prefix == 8
    assert (await service.list_workflow(AuthState.DENIED)).total_count == 0

    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)
    assert (await service.get({"xchg_code": "XKLS"})).data.xchg_prefix == 8
    await store.dispose()


@pytest.mark.asyncio
async def test_update_of_pending_insert_revises_the_insert(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS", "xchg_prefix": 1, "broker_code": "B1"}, MAKER)

    revised = await service.update({"xchg_code": "XKLS"}, {"xchg_prefix": 2}, OTHER_MAKER)
    assert revised.workflow.auth_state is AuthState.UNAUTHORIZED
    assert revised.workflow.action_type is ActionType.INSERT
    assert revised.workflow.maker_id == "maker2"
    assert revised.pending is None
    assert revised.effective.xchg_prefix == 2
    assert revised.data.broker_code == "B1"

    # The original maker may now approve, since the latest change is not theirs.
    result = await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, MAKER)
    assert result.state is AuthState.APPROVED
    assert (await service.get({"xchg_code": "XKLS"})).data.xchg_prefix == 2
    await store.dispose()


@pytest.mark.asyncio
async def test_delete_discards_a_pending_update(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS", "xchg_prefix": 1}, MAKER)
    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)
    await service.update({"xchg_code": "XKLS"}, {"xchg_prefix": 9}, MAKER)

    pending = await service.delete({"xchg_code": "XKLS"}, MAKER, remarks="retire")
    assert pending.workflow.action_type is ActionType.DELETE
    assert pending.workflow.auth_state is AuthState.UNAUTHORIZED
    assert pending.pending is None
    assert pending.data.xchg_prefix == 1

    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)
    deleted = await service.get({"xchg_code": "XKLS"}, include_deleted=True)
    assert deleted.workflow.is_deleted is DeleteStatus.DELETED
    assert deleted.data.xchg_prefix == 1
    await store.dispose()


@pytest.mark.asyncio
async def test_duplicate_create_is_rejected(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS", "xchg_prefix": 1}, MAKER)

    with pytest.raises(DomainError, match="already exists"):
        await service.create({"xchg_code": "XKLS", "xchg_prefix": 2}, OTHER_MAKER)

    view = await service.get({"xchg_code": "XKLS"})
    assert view.data.xchg_prefix == 1
    assert view.workflow.maker_id == "maker1"
    assert (await service.list()).total_count == 1
    await store.dispose()


@pytest.mark.asyncio
async def test_authorizing_a_non_pending_record_fails(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS"}, MAKER)
    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)

    with pytest.raises(DomainError, match="not pending"):
        await service.authorize({"xchg_code": "XKLS"}, Decision.DENY, CHECKER, remarks="late")
    assert (await service.get({"xchg_code": "XKLS"})).workflow.auth_state is AuthState.APPROVED

    with pytest.raises(NotFound):
        await service.authorize({"xchg_code": "NONE"}, Decision.APPROVE, CHECKER)
    with pytest.raises(InvalidArgument):
        await service.authorize({"xchg_code": "XKLS"}, "escalate", CHECKER)
    with pytest.raises(InvalidArgument):
        await service.authorize({"xchg_code": "XKLS"}, None, CHECKER)
    await store.dispose()


@pytest.mark.asyncio
async def test_self_authorization(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS"}, MAKER)
    with pytest.raises(DomainError, match="own change"):
        await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, MAKER)
    await store.dispose()

    other = tmp_path / "self_allowed"
    other.mkdir()
    store, service = await _setup(other, allow_self_authorization=True)
    await service.create({"xchg_code": "XSES"}, MAKER)
    result = await service.authorize({"xchg_code": "XSES"}, Decision.APPROVE, MAKER)
    assert result.state is AuthState.APPROVED
    await store.dispose()


@pytest.mark.asyncio
async def test_delete_is_soft_and_only_on_approval(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS", "xchg_prefix": 1}, MAKER)
    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)

    pending = await service.delete({"xchg_code": "XKLS"}, MAKER, remarks="exchange closed")
    assert pending.workflow.action_type is ActionType.DELETE
    assert pending.workflow.is_deleted is DeleteStatus.ACTIVE
    assert (await service.list()).total_count == 1

    await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)
    with pytest.raises(NotFound):
        await service.get({"xchg_code": "XKLS"})
    deleted = await service.get({"xchg_code": "XKLS"}, include_deleted=True)
    assert deleted.workflow.is_deleted is DeleteStatus.DELETED
    assert (await service.list()).total_count == 0

    with pytest.raises(NotFound):
        await service.update({"xchg_code": "XKLS"}, {"xchg_prefix": 2}, MAKER)
    with pytest.raises(NotFound):
        await service.delete({"xchg_code": "XKLS"}, MAKER)

    # The key can be created again as a new pending insert.
    recreated = await service.create({"xchg_code": "XKLS", "xchg_prefix": 3}, MAKER)
    assert recreated.workflow.action_type is ActionType.INSERT
    assert recreated.workflow.is_deleted is DeleteStatus.ACTIVE
    assert recreated.data.xchg_prefix == 3
    await store.dispose()


@pytest.mark.asyncio
async def test_validation_failure_stores_nothing(tmp_path):
    store, service = await _setup(tmp_path, entity=catalog.ORDER_GROUP)
    with pytest.raises(ValidationFailed) as excinfo:
        await service.create({"group_code": 0, "group_desc": ""}, MAKER)
    assert {e.field for e in excinfo.value.errors} == {"group_code", "group_desc"}

    with pytest.raises(ValidationFailed):
        await service.create({"group_code": 1, "group_desc": "ok"}, MAKER, remarks="x" * 201)
    assert (await service.list()).total_count == 0
    await store.dispose()


@pytest.mark.asyncio
async def test_paging_covers_every_record_once(tmp_path):
    store, service = await _setup(tmp_path)
    for i in range(23):
        await service.create({"xchg_code": f"X{i:02d}", "xchg_prefix": i % 4}, MAKER)

    seen = []
    for number in (1, 2, 3):
        page = await service.list(
            PageRequest(page_number=number, page_size=10),
            sort=SortSpec(column="xchg_prefix", direction=SortDirection.DESC),
        )
        assert page.total_count == 23
        seen.extend(v.data.xchg_code for v in page.items)
    assert len(seen) == 23
    assert len(set(seen)) == 23

    beyond = await service.list(PageRequest(page_number=4, page_size=10))
    assert beyond.items == []
    assert beyond.total_count == 23

    outward = (await service.list(PageRequest(page_number=1, page_size=5))).outward()
    assert outward["totalCount"] == 23
    assert outward["items"][0]["data"]["xchg_code"] == "X00"

    searched = await service.list(search_text="x1")
    assert searched.total_count == 10

    with pytest.raises(InvalidArgument):
        await service.list(sort=SortSpec(column="no_such_column"))
    await store.dispose()


@pytest.mark.asyncio
async def test_workflow_queue_filters_by_maker(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS"}, MAKER)
    await service.create({"xchg_code": "XSES"}, OTHER_MAKER)
    await service.create({"xchg_code": "XIDX"}, OTHER_MAKER)

    mine = await service.list_workflow(maker_id="maker2")
    assert sorted(v.data.xchg_code for v in mine.items) == ["XIDX", "XSES"]
    assert (await service.list_workflow()).total_count == 3
    assert (await service.list_workflow(AuthState.DENIED)).total_count == 0

    with pytest.raises(InvalidArgument):
        await service.list_workflow(AuthState.APPROVED)
    with pytest.raises(InvalidArgument, match="Unknown workflow state"):
        await service.list_workflow(7)
    await store.dispose()


@pytest.mark.asyncio
async def test_stale_row_version_updates_nothing(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS"}, MAKER)

    params = (
        ParameterList()
        .add_in("xchg_code", "XKLS")
        .add_in("IsAuth", int(AuthState.APPROVED))
        .add_in("RowVersion", 99)
        .add_in("AuthId", "checker2")
        .add_in("AuthDt", NOW)
        .add_in("AuthTransDt", NOW.date())
        .add_out("RowsAffected", int)
    )
    async with store.unit_of_work() as uow:
        result = await CommandExecutor(uow).execute_with_outputs(
            Command.routine("exchange.authorize", params)
        )
    assert result.output("RowsAffected", int) == 0
    assert (await service.get({"xchg_code": "XKLS"})).workflow.auth_state is AuthState.UNAUTHORIZED
    await store.dispose()


@pytest.mark.asyncio
async def test_authorize_losing_the_race_raises_and_keeps_record_pending(tmp_path):
    store, service = await _setup(tmp_path)
    await service.create({"xchg_code": "XKLS", "xchg_prefix": 1}, MAKER)

    original = store.routines.get("exchange.authorize")

    async def after_concurrent_change(ctx):
        # Another writer bumps the version between the read and the update.
        await ctx.connection.execute(
            text("UPDATE exchange SET row_version = row_version + 1 WHERE xchg_code = :code"),
            {"code": ctx.get("xchg_code")},
        )
        await original.handler(ctx)

    store.routines.register(
        "exchange.authorize", after_concurrent_change, original.parameters, replace=True
    )
    with pytest.raises(DomainError, match="No records were updated"):
        await service.authorize({"xchg_code": "XKLS"}, Decision.APPROVE, CHECKER)

    view = await service.get({"xchg_code": "XKLS"})
    assert view.workflow.auth_state is AuthState.UNAUTHORIZED
    assert view.workflow.auth_id is None
    assert view.workflow.row_version == 1
    await store.dispose()


@pytest.mark.asyncio
async def test_approved_holding_change_is_notified_after_commit(tmp_path):
    notifier = InMemoryNotifier()
    store, service = await _setup(tmp_path, entity=catalog.CLIENT_STOCK, notifier=notifier)
    await service.create({**HOLDING, "xchg_code": "XKLS", "open_free_balance": 100}, MAKER)

    result = await service.authorize(HOLDING, Decision.APPROVE, CHECKER)
    assert result.notification.success
    assert len(notifier.sent) == 1
    assert notifier.sent[0].entity_keys == HOLDING
    assert notifier.sent[0].change_kind is ChangeKind.INSERT
    assert notifier.sent[0].endpoint == "/update-share-holding"

    await service.update(HOLDING, {"xchg_code": "XKLS", "open_free_balance": 50}, MAKER)
    await service.authorize(HOLDING, Decision.DENY, CHECKER, remarks="wrong balance")
    assert len(notifier.sent) == 1

    entries = await NotificationLogDB(store.engine).list_entries()
    assert [(e.entity, e.change_kind, e.success) for e in entries] == [
        ("client_stock", "insert", True)
    ]
    assert entries[0].entity_keys == HOLDING
    await store.dispose()


@pytest.mark.asyncio
async def test_failed_notification_does_not_undo_authorization(tmp_path):
    notifier = InMemoryNotifier(fail_with="ledger offline")
    store, service = await _setup(tmp_path, entity=catalog.CLIENT_STOCK, notifier=notifier)
    await service.create({**HOLDING, "xchg_code": "XKLS"}, MAKER)

    result = await service.authorize(HOLDING, Decision.APPROVE, CHECKER)
    assert result.state is AuthState.APPROVED
    assert not result.notification.success
    assert (await service.get(HOLDING)).workflow.auth_state is AuthState.APPROVED

    service.notifier = ExplodingNotifier()
    await service.delete(HOLDING, MAKER)
    result = await service.authorize(HOLDING, Decision.APPROVE, CHECKER)
    assert result.state is AuthState.APPROVED
    assert result.notification.message == "ledger unreachable"

    failed = await NotificationLogDB(store.engine).list_entries(failed_only=True)
    assert [(e.change_kind, e.message) for e in failed] == [
        ("insert", "ledger offline"),
        ("delete", "ledger unreachable"),
    ]
    await store.dispose()


@pytest.mark.asyncio
async def test_cancelled_request_touches_nothing(tmp_path):
    store, service = await _setup(tmp_path)
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(Cancelled):
        await service.create({"xchg_code": "XKLS"}, MAKER, cancel=cancel)
    assert (await service.list()).total_count == 0
    await store.dispose()


@pytest.mark.asyncio
async def test_audit_context_is_read_once_per_request(tmp_path):
    store, service = await _setup(tmp_path)
    audit = CountingAudit("maker9")
    view = await service.create({"xchg_code": "XKLS"}, audit)
    assert audit.calls == 1
    assert view.workflow.maker_id == "maker9"
    assert view.workflow.ip_address == "10.0.0.9"
    await store.dispose()


@pytest.mark.asyncio
async def test_workflow_summary_counts_per_entity(tmp_path):
    store, exchanges = await _setup(tmp_path)
    groups = MakerCheckerService(store, catalog.ORDER_GROUP, config=RmsFlowConfig())
    await exchanges.create({"xchg_code": "XKLS"}, MAKER)
    await exchanges.create({"xchg_code": "XSES"}, OTHER_MAKER)
    await groups.create({"group_code": 1, "group_desc": "Margin"}, MAKER)
    await groups.authorize({"group_code": 1}, Decision.DENY, CHECKER, remarks="typo")

    summary_service = WorkflowSummaryService(store, catalog.ENTITIES.values())
    summary = await summary_service.summary()
    assert summary.total_unauthorized == 2
    assert summary.total_denied == 1
    assert [(i.module, i.total_records) for i in summary.unauthorized_items] == [("exchange", 2)]
    assert [(i.module, i.total_records) for i in summary.denied_items] == [("order_group", 1)]

    mine = await summary_service.summary(maker_id="maker2")
    assert mine.total_unauthorized == 1
    assert mine.total_denied == 0
    await store.dispose()
