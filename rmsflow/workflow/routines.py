"""Store routines backing every maker-checker entity.

Each entity gets five routines, named ``<entity>.<operation>``:

* ``crud``      maker action (insert, update or delete) reporting ``RowsAffected``
* ``get``       one record by key with a ``StatusCode``/``StatusMsg`` pair
* ``list``      paged active records with a ``TotalCount`` output
* ``list_wf``   paged unauthorized or denied records
* ``authorize`` conditional checker decision reporting ``RowsAffected``

Handlers run on the caller's connection and therefore inside the caller's
transaction.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import ColumnElement, String, Table, and_, cast, func, insert, or_, select, update

from ..errors import DomainError, InvalidArgument, NotFound, format_key
from ..params import Direction
from ..store.engine import Store
from ..store.routines import RoutineContext, RoutineHandler, RoutineParameter
from .entity import PENDING_COLUMN, EntityDefinition
from .states import ActionType, AuthLevel, AuthState, DeleteStatus

logger = logging.getLogger(__name__)

ROWS_AFFECTED = "RowsAffected"
TOTAL_COUNT = "TotalCount"

_PAGING_PARAMETERS = (
    RoutineParameter(name="PageNumber", type=int),
    RoutineParameter(name="PageSize", type=int),
    RoutineParameter(name="SortColumn", type=str, required=False),
    RoutineParameter(name="SortDirection", type=str, required=False),
    RoutineParameter(name="SearchText", type=str, required=False),
    RoutineParameter(name="SearchColumn", type=str, required=False),
    RoutineParameter(name=TOTAL_COUNT, type=int, direction=Direction.OUT),
)


def register_entity(store: Store, entity: EntityDefinition) -> Table:
    """Create the entity table in the store metadata and register its routines."""
    table = entity.table(store.metadata)
    registry = store.routines
    if entity.routine_name("crud") in registry:
        return table

    key_params = [
        RoutineParameter(name=f, type=entity.field_type(f)) for f in entity.key_fields
    ]
    field_params = [
        RoutineParameter(name=f, type=entity.field_type(f), required=False)
        for f in entity.fields
        if f not in entity.key_fields
    ]
    rows_affected = RoutineParameter(name=ROWS_AFFECTED, type=int, direction=Direction.OUT)

    registry.register(
        entity.routine_name("crud"),
        _crud(entity, table),
        [
            RoutineParameter(name="ActionType", type=int),
            *key_params,
            *field_params,
            RoutineParameter(name="MakerId", type=str),
            RoutineParameter(name="IPAddress", type=str, required=False),
            RoutineParameter(name="ActionDt", type=datetime),
            RoutineParameter(name="TransDt", type=date),
            RoutineParameter(name="AuthLevel", type=int, required=False),
            RoutineParameter(name="Remarks", type=str, required=False),
            rows_affected,
        ],
    )
    registry.register(
        entity.routine_name("get"),
        _get(entity, table),
        [
            *key_params,
            RoutineParameter(name="IncludeDeleted", type=bool, required=False),
            RoutineParameter(name="StatusCode", type=int, direction=Direction.OUT),
            RoutineParameter(name="StatusMsg", type=str, direction=Direction.OUT),
        ],
    )
    registry.register(
        entity.routine_name("list"),
        _list(entity, table, workflow=False),
        [*_PAGING_PARAMETERS, RoutineParameter(name="IsAuth", type=int, required=False)],
    )
    registry.register(
        entity.routine_name("list_wf"),
        _list(entity, table, workflow=True),
        [
            *_PAGING_PARAMETERS,
            RoutineParameter(name="IsAuth", type=int),
            RoutineParameter(name="MakerId", type=str, required=False),
        ],
    )
    registry.register(
        entity.routine_name("authorize"),
        _authorize(entity, table),
        [
            *key_params,
            RoutineParameter(name="IsAuth", type=int),
            RoutineParameter(name="RowVersion", type=int),
            RoutineParameter(name="AuthId", type=str),
            RoutineParameter(name="AuthDt", type=datetime),
            RoutineParameter(name="AuthTransDt", type=date),
            RoutineParameter(name="PromotePending", type=bool, required=False),
            RoutineParameter(name="MarkDeleted", type=bool, required=False),
            RoutineParameter(name="Remarks", type=str, required=False),
            rows_affected,
        ],
    )
    logger.debug(f"Registered workflow routines for entity {entity.name}")
    return table


# ----------------------------------------------------------------------
# Helpers
def _key_of(ctx: RoutineContext, entity: EntityDefinition) -> Dict[str, Any]:
    return {f: ctx.get(f) for f in entity.key_fields}


def _key_clause(table: Table, key: Mapping[str, Any]) -> ColumnElement[bool]:
    return and_(*(table.c[name] == value for name, value in key.items()))


def _never_approved(row: Mapping[str, Any]) -> bool:
    return row["action_type"] == ActionType.INSERT and row["auth_state"] != AuthState.APPROVED


def _column(table: Table, name: str):
    lowered = name.lower()
    for column in table.c:
        if column.name.lower() == lowered and column.name != PENDING_COLUMN:
            return column
    raise InvalidArgument(f"{table.name}: unknown column {name}")


def _search_clause(
    table: Table, entity: EntityDefinition, text: Optional[str], column: Optional[str]
) -> Optional[ColumnElement[bool]]:
    if not text:
        return None
    pattern = f"%{text}%"
    if column:
        return cast(_column(table, column), String).ilike(pattern)
    text_columns = [table.c[f] for f in entity.fields if entity.field_type(f) is str]
    if not text_columns:
        return None
    return or_(*(c.ilike(pattern) for c in text_columns))


def _order_by(table: Table, entity: EntityDefinition, ctx: RoutineContext) -> List[Any]:
    descending = str(ctx.get("SortDirection") or "ASC").strip().upper() == "DESC"
    order: List[Any] = []
    sort_column = ctx.get("SortColumn")
    if sort_column:
        column = _column(table, sort_column)
        order.append(column.desc() if descending else column.asc())
    for field in entity.key_fields:
        if not sort_column or field.lower() != str(sort_column).lower():
            order.append(table.c[field].asc())
    return order


# ----------------------------------------------------------------------
# Handlers
def _crud(entity: EntityDefinition, table: Table) -> RoutineHandler:
    async def handler(ctx: RoutineContext) -> None:
        action = ActionType(ctx.get("ActionType"))
        key = _key_of(ctx, entity)
        conn = ctx.connection
        existing = (
            (await conn.execute(select(table).where(_key_clause(table, key)))).mappings().first()
        )
        stamp = {
            "auth_state": AuthState.UNAUTHORIZED,
            "auth_level": ctx.get("AuthLevel") or AuthLevel.LEVEL1,
            "maker_id": ctx.get("MakerId"),
            "action_dt": ctx.get("ActionDt"),
            "trans_dt": ctx.get("TransDt"),
            "ip_address": ctx.get("IPAddress"),
            "action_type": int(action),
            "auth_id": None,
            "auth_dt": None,
            "auth_trans_dt": None,
            "remarks": ctx.get("Remarks"),
        }

        if action is ActionType.INSERT:
            if existing is not None and existing["is_deleted"] == DeleteStatus.ACTIVE:
                raise DomainError(f"{entity.name} {format_key(key)} already exists")
            values = {f: ctx.get(f) for f in entity.fields}
            values.update(stamp, is_deleted=DeleteStatus.ACTIVE)
            values[PENDING_COLUMN] = None
            if existing is None:
                stmt = insert(table).values(**values, row_version=1)
            else:
                # A soft-deleted key is reused as a fresh pending insert.
                stmt = (
                    update(table)
                    .where(_key_clause(table, key))
                    .values(**values, row_version=existing["row_version"] + 1)
                )
        else:
            if existing is None or existing["is_deleted"] != DeleteStatus.ACTIVE:
                raise NotFound(entity.name, key)
            values = dict(stamp)
            if action is ActionType.UPDATE:
                supplied = {
                    f: ctx.get(f)
                    for f in entity.fields
                    if f not in entity.key_fields and ctx.has(f)
                }
                if _never_approved(existing):
                    # Revising an insert that was never approved keeps it an insert.
                    snapshot = {f: existing[f] for f in entity.fields}
                    snapshot.update(supplied)
                    model = entity.validate_data(snapshot)
                    values.update(
                        {f: getattr(model, f) for f in entity.fields if f not in entity.key_fields}
                    )
                    values["action_type"] = int(ActionType.INSERT)
                    values[PENDING_COLUMN] = None
                else:
                    snapshot = dict(
                        existing[PENDING_COLUMN] or {f: existing[f] for f in entity.fields}
                    )
                    snapshot.update(supplied)
                    snapshot.update(key)
                    values[PENDING_COLUMN] = entity.validate_data(snapshot).model_dump(
                        mode="json"
                    )
            else:
                values[PENDING_COLUMN] = None
            stmt = (
                update(table)
                .where(_key_clause(table, key))
                .values(**values, row_version=existing["row_version"] + 1)
            )

        result = await conn.execute(stmt)
        ctx.rows_affected = result.rowcount

    return handler


def _get(entity: EntityDefinition, table: Table) -> RoutineHandler:
    async def handler(ctx: RoutineContext) -> None:
        stmt = select(table).where(_key_clause(table, _key_of(ctx, entity)))
        if not ctx.get("IncludeDeleted"):
            stmt = stmt.where(table.c.is_deleted == DeleteStatus.ACTIVE)
        row = (await ctx.connection.execute(stmt)).mappings().first()
        if row is None:
            ctx.set_output("StatusCode", 1)
            ctx.set_output("StatusMsg", "Record not found")
            return
        ctx.add_rows([row])
        ctx.set_output("StatusCode", 0)
        ctx.set_output("StatusMsg", "Success")

    return handler


def _list(entity: EntityDefinition, table: Table, workflow: bool) -> RoutineHandler:
    async def handler(ctx: RoutineContext) -> None:
        conditions = [table.c.is_deleted == DeleteStatus.ACTIVE]
        if ctx.get("IsAuth") is not None:
            conditions.append(table.c.auth_state == ctx.get("IsAuth"))
        if workflow and ctx.get("MakerId"):
            conditions.append(table.c.maker_id == ctx.get("MakerId"))
        search = _search_clause(table, entity, ctx.get("SearchText"), ctx.get("SearchColumn"))
        if search is not None:
            conditions.append(search)

        total = await ctx.connection.scalar(
            select(func.count()).select_from(table).where(*conditions)
        )
        page_size = ctx.get("PageSize")
        stmt = (
            select(table)
            .where(*conditions)
            .order_by(*_order_by(table, entity, ctx))
            .limit(page_size)
            .offset((ctx.get("PageNumber") - 1) * page_size)
        )
        rows = (await ctx.connection.execute(stmt)).mappings().all()
        ctx.add_rows(rows)
        ctx.set_output(TOTAL_COUNT, int(total or 0))

    return handler


def _authorize(entity: EntityDefinition, table: Table) -> RoutineHandler:
    async def handler(ctx: RoutineContext) -> None:
        key = _key_of(ctx, entity)
        conn = ctx.connection
        row = (
            (
                await conn.execute(
                    select(table).where(
                        _key_clause(table, key), table.c.is_deleted == DeleteStatus.ACTIVE
                    )
                )
            )
            .mappings()
            .first()
        )
        if row is None:
            raise NotFound(entity.name, key)

        version = ctx.get("RowVersion")
        pending_guard = and_(
            _key_clause(table, key),
            table.c.auth_state == AuthState.UNAUTHORIZED,
            table.c.row_version == version,
        )
        if row["auth_state"] != AuthState.UNAUTHORIZED or row["row_version"] != version:
            ctx.rows_affected = 0
            return

        values: Dict[str, Any] = {
            "auth_state": ctx.get("IsAuth"),
            "auth_id": ctx.get("AuthId"),
            "auth_dt": ctx.get("AuthDt"),
            "auth_trans_dt": ctx.get("AuthTransDt"),
            PENDING_COLUMN: None,
            "row_version": version + 1,
        }
        if ctx.get("Remarks") is not None:
            values["remarks"] = ctx.get("Remarks")
        if ctx.get("PromotePending") and row[PENDING_COLUMN]:
            promoted = entity.validate_data(row[PENDING_COLUMN]).model_dump()
            values.update({f: v for f, v in promoted.items() if f not in entity.key_fields})
        if ctx.get("MarkDeleted"):
            values["is_deleted"] = DeleteStatus.DELETED

        result = await conn.execute(update(table).where(pending_guard).values(**values))
        ctx.rows_affected = result.rowcount

    return handler
