"""Command and result contracts for the command executor."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .params import ParameterList


class Command(BaseModel):
    """A named operation plus its parameters.

    A command is stateless apart from its output parameter values, which the
    executor overwrites on every issuance.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation_name: str
    parameters: ParameterList = Field(default_factory=ParameterList)
    is_routine: bool = False

    @classmethod
    def routine(cls, name: str, parameters: Optional[ParameterList] = None) -> "Command":
        """Command that invokes a registered store routine."""
        return cls(operation_name=name, parameters=parameters or ParameterList(), is_routine=True)

    @classmethod
    def text(cls, sql: str, parameters: Optional[ParameterList] = None) -> "Command":
        """Command that runs SQL text with named ``:binds``."""
        return cls(operation_name=sql, parameters=parameters or ParameterList(), is_routine=False)

    @property
    def label(self) -> str:
        """Short name used in logs and error messages."""
        if self.is_routine:
            return self.operation_name
        text = " ".join(self.operation_name.split())
        return text if len(text) <= 60 else text[:57] + "..."


class CommandResult(BaseModel):
    """Outcome of one command issuance; owned by the caller."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    rows_affected: int = 0
    outputs: Dict[str, Any] = Field(default_factory=dict)
    rows: Any = Field(default_factory=lambda: iter(()))

    def output(self, name: str, type_: Any = None, default: Any = None) -> Any:
        """Case-insensitive output lookup with optional coercion."""
        lowered = name.lower()
        for key, value in self.outputs.items():
            if key.lower() == lowered:
                if value is None:
                    return default
                if type_ is not None and not isinstance(value, type_):
                    try:
                        return type_(value)
                    except (TypeError, ValueError):
                        return default
                return value
        return default
