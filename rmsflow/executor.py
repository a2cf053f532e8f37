"""Generic parameterized command/query executor."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from .binding import RowType, bind_row
from .command import Command, CommandResult
from .errors import Cancelled, InvalidArgument, MultipleResultsError, OperationFailed, RmsFlowError
from .params import ParameterList
from .store.routines import Routine, RoutineContext
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

ROWS_AFFECTED = "RowsAffected"

# Same pattern SQLAlchemy uses to find ``:name`` binds in text clauses.
_BIND_RE = re.compile(r"(?<![:\w\x5c]):(\w+)(?!:)", re.UNICODE)

_STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def bind_names(sql: str) -> List[str]:
    """Bind parameter names referenced by ``sql`` in order of appearance."""
    seen: List[str] = []
    for name in _BIND_RE.findall(sql):
        if name not in seen:
            seen.append(name)
    return seen


class CommandExecutor:
    """Issues commands against the store through one unit of work.

    Every call performs exactly one dispatch: output parameters, the affected
    row count and result rows all come from that same call. Calls are not
    retried; store faults surface as :class:`OperationFailed`.
    """

    def __init__(self, unit_of_work: UnitOfWork) -> None:
        self._uow = unit_of_work

    @property
    def unit_of_work(self) -> UnitOfWork:
        return self._uow

    # ------------------------------------------------------------------
    # Public API
    async def execute(self, command: Command, *, cancel: Optional[asyncio.Event] = None) -> int:
        """Run a mutation and return the affected row count."""
        rows_affected, _, _ = await self._dispatch(command, cancel)
        return rows_affected

    async def execute_with_outputs(
        self,
        command: Command,
        row_type: Optional[RowType[Any]] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        """Run a command and return outputs and rows from the same call."""
        rows_affected, rows, params = await self._dispatch(command, cancel)
        return CommandResult(
            rows_affected=rows_affected,
            outputs=params.outputs(),
            rows=(bind_row(row_type, r) for r in rows),
        )

    async def query_single(
        self,
        command: Command,
        row_type: Optional[RowType[Any]] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> Any:
        """Return the only row, or ``None`` when there is none.

        Raises:
            MultipleResultsError: when the store returns more than one row.
        """
        _, rows, _ = await self._dispatch(command, cancel)
        if len(rows) > 1:
            raise MultipleResultsError(
                f"{command.label}: expected at most one row, got {len(rows)}"
            )
        return bind_row(row_type, rows[0]) if rows else None

    async def query_many(
        self,
        command: Command,
        row_type: Optional[RowType[Any]] = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> Iterator[Any]:
        """Return a one-shot iterator binding rows as they are consumed."""
        _, rows, _ = await self._dispatch(command, cancel)
        return (bind_row(row_type, r) for r in rows)

    async def query_scalar(
        self,
        command: Command,
        value_type: Any = None,
        *,
        cancel: Optional[asyncio.Event] = None,
    ) -> Any:
        """First column of the first row, or ``None``."""
        _, rows, _ = await self._dispatch(command, cancel)
        if not rows:
            return None
        value = next(iter(rows[0].values()), None)
        if value is None or value_type is None or isinstance(value, value_type):
            return value
        try:
            return value_type(value)
        except (TypeError, ValueError) as exc:
            raise OperationFailed(
                command.label, f"scalar {value!r} is not a {value_type.__name__}"
            ) from exc

    # ------------------------------------------------------------------
    # Dispatch
    async def _dispatch(
        self, command: Command, cancel: Optional[asyncio.Event]
    ) -> Tuple[int, List[Dict[str, Any]], ParameterList]:
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"{command.label} cancelled before dispatch")

        # One copy per issuance; outputs start from their placeholders.
        params = command.parameters.for_issuance()
        params.validate()
        routine: Optional[Routine] = None
        values: Dict[str, Any] = {}
        if command.is_routine:
            routine = self._uow.store.routines.get(command.operation_name)
            if routine is None:
                raise InvalidArgument(f"Unknown routine: {command.operation_name}")
            routine.check(params)
        else:
            values = self._text_values(command.operation_name, params)

        logger.debug(
            f"Dispatching {command.label} (routine={command.is_routine}) "
            f"with {len(params)} parameters"
        )
        try:
            async with self._uow.statement_scope() as conn:
                if routine is not None:
                    rows_affected, rows = await self._run_routine(routine, conn, params)
                else:
                    rows_affected, rows = await self._run_text(
                        command.operation_name, conn, params, values
                    )
            return rows_affected, rows, params
        except RmsFlowError:
            raise
        except _STORE_ERRORS as exc:
            logger.error(f"Store call {command.label} failed: {exc}")
            raise OperationFailed(command.label, str(exc)) from exc

    @staticmethod
    def _text_values(sql: str, params: ParameterList) -> Dict[str, Any]:
        binds = bind_names(sql)
        lowered = {b.lower() for b in binds}
        for param in params:
            if param.direction.is_input and param.name.lower() not in lowered:
                raise InvalidArgument(f"Unknown parameter {param.name} for SQL command")
        values: Dict[str, Any] = {}
        for bind in binds:
            param = params.get(bind)
            if param is None or not param.direction.is_input:
                raise InvalidArgument(f"Missing value for bind parameter :{bind}")
            values[bind] = param.value
        return values

    @staticmethod
    async def _run_routine(
        routine: Routine, conn: AsyncConnection, params: ParameterList
    ) -> Tuple[int, List[Dict[str, Any]]]:
        ctx = RoutineContext(conn, params)
        await routine.handler(ctx)
        if ROWS_AFFECTED.lower() not in ctx.assigned:
            ctx.set_output(ROWS_AFFECTED, ctx.rows_affected)
        return ctx.rows_affected, [dict(r) for r in ctx.rows]

    @staticmethod
    async def _run_text(
        sql: str, conn: AsyncConnection, params: ParameterList, values: Mapping[str, Any]
    ) -> Tuple[int, List[Dict[str, Any]]]:
        result = await conn.execute(text(sql), dict(values))
        rows = [dict(r) for r in result.mappings().all()] if result.returns_rows else []
        rows_affected = result.rowcount if result.rowcount > 0 else len(rows)
        for param in params.output_params():
            if param.name.lower() == ROWS_AFFECTED.lower():
                param.value = rows_affected
            elif rows:
                column = _find_column(rows[0], param.name)
                if column is not None:
                    param.value = rows[0][column]
        return rows_affected, rows


def _find_column(row: Mapping[str, Any], name: str) -> Optional[str]:
    lowered = name.lower()
    return next((k for k in row if k.lower() == lowered), None)
