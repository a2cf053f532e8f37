"""Maker-checker service: maker actions, checker decisions and reads for one entity."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError

from ..audit import AuditContext, AuditSnapshot
from ..command import Command
from ..config import RmsFlowConfig, load_config
from ..db.notification_log import NotificationLogDB
from ..errors import DomainError, InvalidArgument, NotFound, RmsFlowError, format_key
from ..executor import CommandExecutor
from ..notifiers.base import BaseNotifier, ChangeKind, NotificationAck
from ..paging import PagedQueryEngine, PageRequest, PageResult, SortSpec
from ..params import ParameterList
from ..store.engine import Store
from .entity import EntityDefinition, EntityView
from .machine import (
    checker_stamp,
    ensure_authorizable,
    maker_stamp,
    validate_decision,
    validate_remarks,
)
from .record import WorkflowRecord
from .routines import ROWS_AFFECTED, register_entity
from .states import ActionType, AuthState, Decision

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthorizationResult(BaseModel):
    """Outcome of a checker decision."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: Dict[str, Any]
    decision: Decision
    state: AuthState
    rows_affected: int
    record: Optional[EntityView] = None
    notification: Optional[NotificationAck] = None


class MakerCheckerService:
    """Dual-control operations over one :class:`EntityDefinition`.

    Every maker action leaves the record ``UNAUTHORIZED``; only
    :meth:`authorize` moves it to ``APPROVED`` or ``DENIED``. Each call uses
    its own :class:`UnitOfWork`, so one service instance may serve concurrent
    requests.
    """

    def __init__(
        self,
        store: Store,
        entity: EntityDefinition,
        notifier: Optional[BaseNotifier] = None,
        config: Optional[RmsFlowConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.entity = entity
        self.notifier = notifier
        self.config = config or load_config()
        self._clock = clock or _utcnow
        self._notification_log = NotificationLogDB(store.engine)
        register_entity(store, entity)

    # ------------------------------------------------------------------
    # Reads
    async def list(
        self,
        page: Optional[PageRequest] = None,
        *,
        sort: Optional[SortSpec] = None,
        search_text: Optional[str] = None,
        search_column: Optional[str] = None,
        auth_state: Optional[AuthState] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> PageResult[EntityView]:
        """Active records with their authorized values."""
        filters: Dict[str, Any] = {"SearchText": search_text, "SearchColumn": search_column}
        if auth_state is not None:
            filters["IsAuth"] = int(auth_state)
        return await self._page("list", filters, sort, page, cancel)

    async def list_workflow(
        self,
        state: AuthState = AuthState.UNAUTHORIZED,
        page: Optional[PageRequest] = None,
        *,
        maker_id: Optional[str] = None,
        sort: Optional[SortSpec] = None,
        search_text: Optional[str] = None,
        search_column: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> PageResult[EntityView]:
        """Checker queue (``UNAUTHORIZED``) or denied list, with pending values."""
        try:
            state = AuthState(state)
        except ValueError:
            raise InvalidArgument(f"Unknown workflow state: {state!r}") from None
        if state is AuthState.APPROVED:
            raise InvalidArgument("Workflow lists cover unauthorized or denied records only")
        filters: Dict[str, Any] = {
            "IsAuth": int(state),
            "MakerId": maker_id,
            "SearchText": search_text,
            "SearchColumn": search_column,
        }
        return await self._page("list_wf", filters, sort, page, cancel)

    async def get(
        self,
        key: Mapping[str, Any],
        *,
        include_deleted: bool = False,
        cancel: Optional[asyncio.Event] = None,
    ) -> EntityView:
        """One record by key.

        Raises:
            NotFound: no active record (or no record at all with ``include_deleted``).
        """
        key = self.entity.key_of(key)
        async with self.store.unit_of_work() as uow:
            with self._guard("get", key):
                return await self._read(CommandExecutor(uow), key, include_deleted, cancel)

    # ------------------------------------------------------------------
    # Maker actions
    async def create(
        self,
        data: Mapping[str, Any] | BaseModel,
        audit: AuditContext,
        *,
        remarks: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> EntityView:
        actor = AuditSnapshot.capture(audit)
        model = self.entity.validate_data(data)
        remarks = validate_remarks(remarks, self.config.workflow.remarks_max_length)
        key = self.entity.key_of(model)
        stamp = maker_stamp(
            ActionType.INSERT, actor, self._clock(), remarks, self.config.workflow.auth_level
        )
        await self._apply_maker_action(stamp, key, model.model_dump(), actor, cancel)
        return await self.get(key)

    async def update(
        self,
        key: Mapping[str, Any],
        data: Mapping[str, Any] | BaseModel,
        audit: AuditContext,
        *,
        remarks: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> EntityView:
        """Record a pending change; authorized values stay visible until approval.

        Only the fields present in ``data`` change. For a model, those are the
        fields explicitly set on it.
        """
        actor = AuditSnapshot.capture(audit)
        key = self.entity.key_of(key)
        changes = self.entity.validate_changes(data)
        if not changes:
            raise InvalidArgument(f"{self.entity.name}: no fields to update")
        remarks = validate_remarks(remarks, self.config.workflow.remarks_max_length)
        stamp = maker_stamp(
            ActionType.UPDATE, actor, self._clock(), remarks, self.config.workflow.auth_level
        )
        await self._apply_maker_action(stamp, key, changes, actor, cancel)
        return await self.get(key)

    async def delete(
        self,
        key: Mapping[str, Any],
        audit: AuditContext,
        *,
        remarks: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> EntityView:
        """Record a pending delete; the row is soft-deleted only on approval."""
        actor = AuditSnapshot.capture(audit)
        key = self.entity.key_of(key)
        remarks = validate_remarks(remarks, self.config.workflow.remarks_max_length)
        stamp = maker_stamp(
            ActionType.DELETE, actor, self._clock(), remarks, self.config.workflow.auth_level
        )
        await self._apply_maker_action(stamp, key, None, actor, cancel)
        return await self.get(key)

    # ------------------------------------------------------------------
    # Checker action
    async def authorize(
        self,
        key: Mapping[str, Any],
        decision: Decision | str | int,
        audit: AuditContext,
        *,
        remarks: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> AuthorizationResult:
        """Approve or deny the pending change on ``key``.

        The decision is a conditional update on the pending state and the row
        version read in the same transaction; a concurrent decision makes it
        affect zero rows, which raises :class:`DomainError`. Downstream
        notification happens after commit and never undoes the decision.
        """
        actor = AuditSnapshot.capture(audit)
        try:
            decision = Decision.parse(decision)
        except ValueError as exc:
            raise InvalidArgument(str(exc)) from exc
        remarks = validate_decision(decision, remarks, self.config.workflow.remarks_max_length)
        key = self.entity.key_of(key)
        now = self._clock()

        async with self.store.unit_of_work() as uow:
            executor = CommandExecutor(uow)

            async def action() -> tuple[WorkflowRecord, int]:
                with self._guard("authorize", key, actor.actor_id):
                    pending = await self._read(executor, key, False, cancel)
                    record = pending.workflow
                    ensure_authorizable(
                        record, actor.actor_id, self.config.workflow.allow_self_authorization
                    )
                    outcome = checker_stamp(record, decision, actor, now, remarks)
                    params = ParameterList()
                    for name, value in key.items():
                        params.add_in(name, value)
                    params.add_in("IsAuth", int(outcome.state), int)
                    params.add_in("RowVersion", record.row_version, int)
                    params.add_in("AuthId", outcome.auth_id, str)
                    params.add_in("AuthDt", outcome.auth_dt, datetime)
                    params.add_in("AuthTransDt", outcome.auth_trans_dt, date)
                    params.add_in("PromotePending", outcome.promote_pending, bool)
                    params.add_in("MarkDeleted", outcome.mark_deleted, bool)
                    params.add_in("Remarks", outcome.remarks, str)
                    params.add_out(ROWS_AFFECTED, int)
                    result = await executor.execute_with_outputs(
                        Command.routine(self.entity.routine_name("authorize"), params),
                        cancel=cancel,
                    )
                    rows_affected = result.output(ROWS_AFFECTED, int, 0)
                    if rows_affected <= 0:
                        logger.warning(
                            f"Authorize {self.entity.name} {format_key(key)} by "
                            f"{actor.actor_id} updated no records"
                        )
                        raise DomainError(
                            f"The {self.entity.name} authorization failed: No records were updated"
                        )
                    return record, rows_affected

            record, rows_affected = await uow.run_in_transaction(action)

        logger.info(
            f"{decision.name.title()} {self.entity.name} {format_key(key)} "
            f"({record.action_type.name if record.action_type else 'UNKNOWN'}) by {actor.actor_id}"
        )
        view = await self.get(key, include_deleted=True)
        notification = None
        if (
            decision is Decision.APPROVE
            and self.entity.notify_on_authorize
            and self.notifier is not None
        ):
            notification = await self._notify(key, record.action_type or ActionType.UPDATE)
        return AuthorizationResult(
            key=key,
            decision=decision,
            state=view.workflow.auth_state,
            rows_affected=rows_affected,
            record=view,
            notification=notification,
        )

    # ------------------------------------------------------------------
    # Internals
    @contextmanager
    def _guard(
        self, operation: str, key: Mapping[str, Any], actor_id: Optional[str] = None
    ) -> Iterator[None]:
        """Re-raise rmsflow errors unchanged and wrap anything else in DomainError."""
        try:
            yield
        except RmsFlowError:
            raise
        except Exception as exc:
            logger.error(
                f"{operation} {self.entity.name} {format_key(key)} by {actor_id or '-'} "
                f"failed: {exc}"
            )
            raise DomainError(str(exc)) from exc

    async def _read(
        self,
        executor: CommandExecutor,
        key: Mapping[str, Any],
        include_deleted: bool,
        cancel: Optional[asyncio.Event],
    ) -> EntityView:
        params = ParameterList()
        for name, value in key.items():
            params.add_in(name, value)
        params.add_in("IncludeDeleted", include_deleted, bool)
        params.add_out("StatusCode", int)
        params.add_out("StatusMsg", str)
        result = await executor.execute_with_outputs(
            Command.routine(self.entity.routine_name("get"), params),
            self.entity.bind_view,
            cancel=cancel,
        )
        views = list(result.rows)
        if result.output("StatusCode", int, 1) != 0 or not views:
            raise NotFound(self.entity.name, key)
        return views[0]

    async def _page(
        self,
        operation: str,
        filters: Mapping[str, Any],
        sort: Optional[SortSpec],
        page: Optional[PageRequest],
        cancel: Optional[asyncio.Event],
    ) -> PageResult[EntityView]:
        async with self.store.unit_of_work() as uow:
            engine = PagedQueryEngine(CommandExecutor(uow), self.config.paging)
            with self._guard(operation, {}):
                return await engine.page(
                    self.entity.routine_name(operation),
                    filters,
                    sort,
                    page,
                    self.entity.bind_view,
                    default_sort=self.entity.key_fields[0],
                    cancel=cancel,
                )

    async def _apply_maker_action(
        self,
        stamp: WorkflowRecord,
        key: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]],
        actor: AuditSnapshot,
        cancel: Optional[asyncio.Event],
    ) -> int:
        action = stamp.action_type
        params = ParameterList()
        params.add_in("ActionType", int(action), int)
        for name, value in key.items():
            params.add_in(name, value)
        for name, value in (fields or {}).items():
            if name not in key:
                params.add_in(name, value)
        params.add_in("MakerId", stamp.maker_id, str)
        params.add_in("IPAddress", stamp.ip_address, str)
        params.add_in("ActionDt", stamp.action_dt, datetime)
        params.add_in("TransDt", stamp.trans_dt, date)
        params.add_in("AuthLevel", stamp.auth_level, int)
        params.add_in("Remarks", stamp.remarks, str)
        params.add_out(ROWS_AFFECTED, int)
        command = Command.routine(self.entity.routine_name("crud"), params)
        operation = action.name.lower()

        async with self.store.unit_of_work() as uow:
            executor = CommandExecutor(uow)

            async def run() -> int:
                with self._guard(operation, key, actor.actor_id):
                    result = await executor.execute_with_outputs(command, cancel=cancel)
                    rows_affected = result.output(ROWS_AFFECTED, int, 0)
                    if rows_affected <= 0:
                        logger.warning(
                            f"{operation} {self.entity.name} {format_key(key)} affected no rows"
                        )
                        raise DomainError(
                            f"The {self.entity.name} {operation} failed: No records were updated"
                        )
                    return rows_affected

            rows_affected = await uow.run_in_transaction(run)

        logger.info(
            f"{operation.title()} {self.entity.name} {format_key(key)} recorded by "
            f"{actor.actor_id}, pending authorization"
        )
        return rows_affected

    async def _notify(self, key: Mapping[str, Any], action: ActionType) -> NotificationAck:
        change_kind = ChangeKind.from_action(action)
        try:
            ack = await self.notifier.notify(
                self.entity.name, key, change_kind, self.entity.notify_endpoint
            )
        except Exception as exc:
            logger.error(f"Notifier raised for {self.entity.name} {format_key(key)}: {exc}")
            ack = NotificationAck(success=False, message=str(exc))
        if not ack.success:
            logger.warning(
                f"Downstream notification for {self.entity.name} {format_key(key)} "
                f"failed after commit: {ack.message}"
            )
        try:
            await self._notification_log.record(
                self.entity.name, key, change_kind.value, ack.success, ack.message
            )
        except SQLAlchemyError as exc:
            logger.error(f"Could not record notification for {self.entity.name}: {exc}")
        return ack
