"""Entity definitions: a pydantic model plus its maker-checker table."""

from __future__ import annotations

import types
from datetime import date, datetime
from decimal import Decimal
from typing import (
    Annotated,
    Any,
    Dict,
    Mapping,
    Optional,
    Tuple,
    Type,
    Union,
    get_args,
    get_origin,
)

from pydantic import BaseModel, ConfigDict, SerializeAsAny, TypeAdapter, ValidationError
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)

from ..errors import FieldError, InvalidArgument, RowBindingError, ValidationFailed
from .record import WorkflowRecord
from .states import AuthLevel, AuthState, DeleteStatus

PENDING_COLUMN = "pending_data"

_COLUMN_TYPES: Dict[Any, Any] = {
    bool: Boolean,
    int: Integer,
    float: Float,
    Decimal: lambda: Numeric(18, 4),
    str: lambda: String(255),
    datetime: DateTime,
    date: Date,
}


def scalar_type(annotation: Any) -> Tuple[Optional[type], bool]:
    """Unwrap ``Optional[X]`` to ``(X, nullable)``; unknown types give ``None``."""
    nullable = False
    origin = get_origin(annotation)
    if origin is Union or origin is getattr(types, "UnionType", None):
        args = [a for a in get_args(annotation) if a is not type(None)]
        nullable = len(args) != len(get_args(annotation))
        annotation = args[0] if len(args) == 1 else None
    if annotation in _COLUMN_TYPES:
        return annotation, nullable
    return None, nullable


def envelope_columns(remarks_length: int = 500) -> list[Column]:
    return [
        Column("auth_state", Integer, nullable=False, default=AuthState.UNAUTHORIZED),
        Column("is_deleted", Integer, nullable=False, default=DeleteStatus.ACTIVE),
        Column("auth_level", Integer, nullable=False, default=AuthLevel.LEVEL1),
        Column("maker_id", String(64)),
        Column("action_dt", DateTime(timezone=True)),
        Column("trans_dt", Date),
        Column("ip_address", String(64)),
        Column("action_type", Integer),
        Column("auth_id", String(64)),
        Column("auth_dt", DateTime(timezone=True)),
        Column("auth_trans_dt", Date),
        Column("remarks", String(remarks_length)),
        Column(PENDING_COLUMN, JSON),
        Column("row_version", Integer, nullable=False, default=1),
    ]


class EntityView(BaseModel):
    """A stored row split into authorized values, envelope and pending values."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    data: SerializeAsAny[BaseModel]
    workflow: WorkflowRecord
    pending: Optional[SerializeAsAny[BaseModel]] = None

    @property
    def effective(self) -> BaseModel:
        """Pending values when a change is waiting, otherwise the authorized ones."""
        return self.pending if self.pending is not None else self.data


class EntityDefinition(BaseModel):
    """Describes one maker-checker entity.

    The pydantic ``model`` lists the business fields with the natural key
    first; ``key_fields`` names the fields forming the primary key.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    model: Type[BaseModel]
    key_fields: Tuple[str, ...]
    table_name: Optional[str] = None
    notify_on_authorize: bool = False
    notify_endpoint: Optional[str] = None

    def model_post_init(self, __context: Any) -> None:
        unknown = [k for k in self.key_fields if k not in self.model.model_fields]
        if not self.key_fields or unknown:
            raise ValueError(f"{self.name}: invalid key fields {list(self.key_fields)}")

    @property
    def table_ref(self) -> str:
        return self.table_name or self.name

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(self.model.model_fields)

    def routine_name(self, operation: str) -> str:
        return f"{self.name}.{operation}"

    def field_type(self, field: str) -> Optional[type]:
        return scalar_type(self.model.model_fields[field].annotation)[0]

    def table(self, metadata: MetaData) -> Table:
        """The entity table, created in ``metadata`` on first use."""
        existing = metadata.tables.get(self.table_ref)
        if existing is not None:
            return existing
        columns = []
        for name, info in self.model.model_fields.items():
            py_type, nullable = scalar_type(info.annotation)
            if py_type is None:
                raise ValueError(f"{self.name}.{name}: unsupported field type {info.annotation}")
            columns.append(
                Column(
                    name,
                    _COLUMN_TYPES[py_type](),
                    primary_key=name in self.key_fields,
                    nullable=nullable and name not in self.key_fields,
                )
            )
        return Table(self.table_ref, metadata, *columns, *envelope_columns())

    # ------------------------------------------------------------------
    def validate_data(self, data: Mapping[str, Any] | BaseModel) -> BaseModel:
        """Validate maker input against the model.

        Raises:
            ValidationFailed: with one message per offending field.
        """
        if isinstance(data, self.model):
            return data
        if isinstance(data, BaseModel):
            data = data.model_dump()
        try:
            return self.model.model_validate(data)
        except ValidationError as exc:
            raise ValidationFailed.from_pydantic("Validation failed", exc) from exc

    def validate_changes(self, data: Mapping[str, Any] | BaseModel) -> Dict[str, Any]:
        """Validate only the fields the maker supplied, leaving the rest untouched.

        Key fields are dropped; the merged record is validated again by the
        store once the current values are known.

        Raises:
            ValidationFailed: for unknown fields or values of the wrong shape.
        """
        if isinstance(data, BaseModel):
            values = data.model_dump(exclude_unset=True)
        else:
            values = dict(data)
        errors: list[FieldError] = []
        changes: Dict[str, Any] = {}
        for name, value in values.items():
            if name in self.key_fields:
                continue
            info = self.model.model_fields.get(name)
            if info is None:
                errors.append(FieldError(field=name, message="Unknown field", value=value))
                continue
            annotation = (
                Annotated[(info.annotation, *info.metadata)] if info.metadata else info.annotation
            )
            try:
                changes[name] = TypeAdapter(annotation).validate_python(value)
            except ValidationError as exc:
                errors.extend(
                    FieldError(field=name, message=err.get("msg", ""), value=value)
                    for err in exc.errors()
                )
        if errors:
            raise ValidationFailed("Validation failed", errors)
        return changes

    def key_of(self, data: Mapping[str, Any] | BaseModel) -> Dict[str, Any]:
        """Extract and type-check the key fields."""
        values = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        missing = [k for k in self.key_fields if values.get(k) is None]
        if missing:
            raise InvalidArgument(f"{self.name}: missing key field(s) {', '.join(missing)}")
        key: Dict[str, Any] = {}
        for field in self.key_fields:
            value = values[field]
            expected = self.field_type(field)
            if expected is not None and not isinstance(value, expected):
                try:
                    value = expected(value)
                except (TypeError, ValueError) as exc:
                    raise InvalidArgument(
                        f"{self.name}: key field {field} expects {expected.__name__}"
                    ) from exc
            key[field] = value
        return key

    def bind_view(self, row: Mapping[str, Any]) -> EntityView:
        """Row binder used by the executor for entity routines."""
        try:
            data = self.model.model_validate({f: row.get(f) for f in self.fields})
            workflow = WorkflowRecord.from_row(row)
            pending_raw = row.get(PENDING_COLUMN)
            pending = None
            if pending_raw:
                pending = self.model.model_validate(pending_raw)
        except ValidationError as exc:
            columns = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise RowBindingError(self.model.__name__, f"row does not bind to columns [{columns}]") from exc
        return EntityView(data=data, workflow=workflow, pending=pending)
