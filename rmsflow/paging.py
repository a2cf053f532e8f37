"""Paged queries returning a window of rows and the total count together."""

from __future__ import annotations

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Dict, Generic, List, Mapping, Optional, TypeVar

from pydantic import BaseModel, Field

from .binding import TOTAL_COUNT_COLUMN, RowType, bind_row, first_field
from .command import Command
from .config import PagingConfig
from .errors import InvalidArgument
from .executor import CommandExecutor
from .params import ParameterList

logger = logging.getLogger(__name__)

T = TypeVar("T")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SortDirection(str, Enum):
    ASC = "ASC"
    DESC = "DESC"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SortDirection":
        """Anything other than ``desc`` (any case) sorts ascending."""
        if value is not None and str(value).strip().upper() == "DESC":
            return cls.DESC
        return cls.ASC


class SortSpec(BaseModel):
    """Sort column and direction passed through to the backing operation."""

    column: str
    direction: SortDirection = SortDirection.ASC


class PageRequest(BaseModel):
    """Requested page; use :meth:`normalized` before querying."""

    page_number: int = 1
    page_size: int = 10

    def normalized(self, default_page_size: int = 10, max_page_size: int = 100) -> "PageRequest":
        """Clamp page number to >= 1 and reset out-of-range sizes to the default."""
        page_number = self.page_number if self.page_number >= 1 else 1
        page_size = self.page_size
        if page_size < 1 or page_size > max_page_size:
            page_size = default_page_size
        return PageRequest(page_number=page_number, page_size=page_size)

    @property
    def offset(self) -> int:
        return (self.page_number - 1) * self.page_size


class PageResult(BaseModel, Generic[T]):
    """A page of items plus the size of the full filtered set."""

    items: List[T] = Field(default_factory=list)
    total_count: int = 0
    page_number: int = 1
    page_size: int = 10

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total_count + self.page_size - 1) // self.page_size

    @property
    def has_previous_page(self) -> bool:
        return self.page_number > 1

    @property
    def has_next_page(self) -> bool:
        return self.page_number < self.total_pages

    def outward(self) -> Dict[str, Any]:
        """Entity-independent paged list contract exposed to clients."""
        return {
            "pageNumber": self.page_number,
            "pageSize": self.page_size,
            "totalCount": self.total_count,
            "items": [
                item.model_dump(mode="json") if isinstance(item, BaseModel) else item
                for item in self.items
            ],
        }


class PagedQueryEngine:
    """Runs paged queries through a :class:`CommandExecutor`.

    Both the row window and the total count come from a single execution of
    the backing operation. Without an explicit sort the engine orders by
    ``default_sort`` or the first field of the row model, and always appends
    that key as a tie-breaker so pages are deterministic.
    """

    def __init__(self, executor: CommandExecutor, paging: Optional[PagingConfig] = None) -> None:
        self._executor = executor
        self._paging = paging or PagingConfig()

    async def page(
        self,
        base_operation: str,
        filters: Optional[Mapping[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        page_request: Optional[PageRequest] = None,
        row_type: Optional[RowType[T]] = None,
        *,
        is_routine: bool = True,
        default_sort: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> PageResult[T]:
        request = (page_request or PageRequest()).normalized(
            self._paging.default_page_size, self._paging.max_page_size
        )
        default_key = default_sort or first_field(row_type)
        if is_routine:
            raw_rows, total = await self._page_routine(
                base_operation, filters or {}, sort, request, default_key, cancel
            )
        else:
            raw_rows, total = await self._page_text(
                base_operation, filters or {}, sort, request, default_key, cancel
            )

        items = [bind_row(row_type, row) for row in raw_rows]
        logger.debug(
            f"Paged query returned {len(items)} rows of {total} "
            f"(page {request.page_number}, size {request.page_size})"
        )
        return PageResult(
            items=items,
            total_count=total,
            page_number=request.page_number,
            page_size=request.page_size,
        )

    async def _page_routine(
        self,
        routine: str,
        filters: Mapping[str, Any],
        sort: Optional[SortSpec],
        request: PageRequest,
        default_key: Optional[str],
        cancel: Optional[asyncio.Event],
    ) -> tuple[List[Dict[str, Any]], int]:
        params = ParameterList()
        params.add_in("PageNumber", request.page_number, int)
        params.add_in("PageSize", request.page_size, int)
        params.add_in("SortColumn", sort.column if sort else default_key)
        params.add_in("SortDirection", (sort.direction if sort else SortDirection.ASC).value)
        for name, value in filters.items():
            params.add_in(name, value)
        params.add_out(TOTAL_COUNT_COLUMN, int)

        result = await self._executor.execute_with_outputs(
            Command.routine(routine, params), cancel=cancel
        )
        rows = list(result.rows)
        total = result.output(TOTAL_COUNT_COLUMN, int, 0)
        if not total and rows:
            total = int(_column(rows[0], TOTAL_COUNT_COLUMN) or 0)
        return rows, total

    async def _page_text(
        self,
        base_sql: str,
        filters: Mapping[str, Any],
        sort: Optional[SortSpec],
        request: PageRequest,
        default_key: Optional[str],
        cancel: Optional[asyncio.Event],
    ) -> tuple[List[Dict[str, Any]], int]:
        column = sort.column if sort else default_key
        if column is None:
            raise InvalidArgument("Paged SQL query needs a sort column or a row model")
        direction = sort.direction if sort else SortDirection.ASC
        order = [(column, direction)]
        if default_key and default_key.lower() != column.lower():
            order.append((default_key, SortDirection.ASC))
        for name, _ in order:
            if not _IDENTIFIER_RE.match(name):
                raise InvalidArgument(f"Invalid sort column: {name!r}")

        inner_order = ", ".join(f"{name} {d.value}" for name, d in order)
        outer_order = ", ".join(f"page_rows.{name} {d.value}" for name, d in order)
        sql = (
            f"WITH base_query AS ({base_sql.strip().rstrip(';')}), "
            f'total AS (SELECT COUNT(*) AS "{TOTAL_COUNT_COLUMN}" FROM base_query) '
            f'SELECT total."{TOTAL_COUNT_COLUMN}" AS "{TOTAL_COUNT_COLUMN}", page_rows.* '
            f"FROM total LEFT JOIN ("
            f"SELECT * FROM base_query ORDER BY {inner_order} "
            f"LIMIT :PageSize OFFSET :PageOffset"
            f") AS page_rows ON 1 = 1 "
            f"ORDER BY {outer_order}"
        )
        params = ParameterList()
        for name, value in filters.items():
            params.add_in(name, value)
        params.add_in("PageSize", request.page_size, int)
        params.add_in("PageOffset", request.offset, int)

        result = await self._executor.execute_with_outputs(Command.text(sql, params), cancel=cancel)
        rows = list(result.rows)
        total = int(_column(rows[0], TOTAL_COUNT_COLUMN) or 0) if rows else 0
        # The count row survives the outer join even when the window is empty.
        window = [
            r for r in rows
            if any(v is not None for k, v in r.items() if k.lower() != TOTAL_COUNT_COLUMN.lower())
        ]
        return window, total


def _column(row: Mapping[str, Any], name: str) -> Any:
    lowered = name.lower()
    return next((v for k, v in row.items() if k.lower() == lowered), None)
