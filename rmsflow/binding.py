"""Column-name keyed binding of result rows into typed records."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .errors import RowBindingError

T = TypeVar("T")

TOTAL_COUNT_COLUMN = "TotalCount"

RowType = Union[Type[T], Callable[[Mapping[str, Any]], T]]


def strip_control_columns(row: Mapping[str, Any]) -> dict[str, Any]:
    """Drop the pagination column so it is never bound to a record."""
    return {k: v for k, v in row.items() if k.lower() != TOTAL_COUNT_COLUMN.lower()}


def bind_row(row_type: RowType[T] | None, row: Mapping[str, Any]) -> T | dict[str, Any]:
    """Bind ``row`` to ``row_type``.

    ``row_type`` is either a pydantic model, validated by column name, or a
    callable taking the row mapping. ``None`` returns the raw row as a dict,
    control columns included.

    Raises:
        RowBindingError: when the row does not satisfy the model.
    """
    if row_type is None:
        return dict(row)
    data = strip_control_columns(row)
    if isinstance(row_type, type) and issubclass(row_type, BaseModel):
        try:
            return row_type.model_validate(data)
        except ValidationError as exc:
            fields = ", ".join(
                ".".join(str(p) for p in err["loc"]) for err in exc.errors()
            )
            raise RowBindingError(
                row_type.__name__, f"row does not bind to columns [{fields}]"
            ) from exc
    return row_type(data)


def first_field(row_type: Any) -> str | None:
    """Name of the first declared field of a pydantic row model."""
    if isinstance(row_type, type) and issubclass(row_type, BaseModel):
        return next(iter(row_type.model_fields), None)
    return None
