"""Error taxonomy shared by the executor and the workflow layer."""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional

from pydantic import BaseModel


class RmsFlowError(Exception):
    """Base class for every error raised by rmsflow."""


class InvalidArgument(RmsFlowError):
    """Malformed or missing parameters, detected before any store access."""


class FieldError(BaseModel):
    """A single field-level validation message."""

    field: str
    message: str
    value: Optional[Any] = None


class ValidationFailed(RmsFlowError):
    """Field-level validation failed; carries one message per field."""

    def __init__(self, message: str, errors: Iterable[FieldError] = ()) -> None:
        super().__init__(message)
        self.errors: List[FieldError] = list(errors)

    @classmethod
    def from_pydantic(cls, message: str, exc: Any) -> "ValidationFailed":
        """Build from a :class:`pydantic.ValidationError`."""
        errors = [
            FieldError(
                field=".".join(str(part) for part in err.get("loc", ())) or "__root__",
                message=err.get("msg", ""),
                value=err.get("input"),
            )
            for err in exc.errors()
        ]
        return cls(message, errors)


class NotFound(RmsFlowError):
    """The requested key has no active, non-deleted record."""

    def __init__(self, entity: str, key: Mapping[str, Any] | Any) -> None:
        super().__init__(f'Entity "{entity}" ({format_key(key)}) was not found.')
        self.entity = entity
        self.key = key


class DomainError(RmsFlowError):
    """Business-rule violation or a mutation that affected zero rows."""


class MultipleResultsError(DomainError):
    """A single-row query returned more than one row."""


class OperationFailed(RmsFlowError):
    """Backing-store or transport fault."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class RowBindingError(OperationFailed):
    """A result row does not match its declared row type."""


class Cancelled(RmsFlowError):
    """The caller cancelled the operation before it was dispatched."""


class TransactionStateError(RmsFlowError):
    """A transaction scope was used out of order."""


def format_key(key: Mapping[str, Any] | Any) -> str:
    """Render a composite key as ``a-b-c`` for messages and logs."""
    if isinstance(key, Mapping):
        return "-".join(str(v) for v in key.values())
    return str(key)
