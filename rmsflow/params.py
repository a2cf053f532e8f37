"""Typed, directional parameter lists passed to the command executor."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict

from .errors import InvalidArgument


class Direction(str, Enum):
    """Direction of a parameter relative to the backing store."""

    IN = "in"
    OUT = "out"
    INOUT = "inout"

    @property
    def is_input(self) -> bool:
        return self in (Direction.IN, Direction.INOUT)

    @property
    def is_output(self) -> bool:
        return self in (Direction.OUT, Direction.INOUT)


_PLACEHOLDERS: Dict[Any, Any] = {
    int: 0,
    float: 0.0,
    str: "",
    bool: False,
    Decimal: Decimal(0),
}


def placeholder_for(declared_type: Any) -> Any:
    """Zero value used for an output parameter before dispatch."""
    return _PLACEHOLDERS.get(declared_type)


def type_matches(value: Any, declared_type: Any) -> bool:
    """Return ``True`` when ``value`` is acceptable for ``declared_type``.

    ``None`` is always accepted (it maps to SQL ``NULL``). Booleans are not
    accepted for integer parameters; integers are accepted for float and
    decimal parameters.
    """
    if declared_type is None or declared_type is Any or value is None:
        return True
    types = declared_type if isinstance(declared_type, tuple) else (declared_type,)
    for t in types:
        if t is int and isinstance(value, bool):
            continue
        if isinstance(value, t):
            return True
        if t in (float, Decimal) and isinstance(value, int) and not isinstance(value, bool):
            return True
    return False


class Parameter(BaseModel):
    """A single named value sent to or returned from the store."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    value: Any = None
    direction: Direction = Direction.IN
    declared_type: Optional[Any] = None

    @property
    def key(self) -> str:
        return self.name.lower()


class ParameterList:
    """Ordered collection of parameters with case-insensitive unique names."""

    def __init__(self, parameters: Iterable[Parameter] = ()) -> None:
        self._params: Dict[str, Parameter] = {}
        for param in parameters:
            self._append(param)

    # ------------------------------------------------------------------
    # Construction
    def _append(self, param: Parameter) -> Parameter:
        if not param.name or not param.name.strip():
            raise InvalidArgument("Parameter name cannot be empty")
        if param.key in self._params:
            raise InvalidArgument(f"Duplicate parameter name: {param.name}")
        self._params[param.key] = param
        return param

    def add(
        self,
        name: str,
        value: Any = None,
        direction: Direction = Direction.IN,
        declared_type: Any = None,
    ) -> "ParameterList":
        if direction is Direction.OUT and value is None:
            value = placeholder_for(declared_type)
        self._append(
            Parameter(
                name=name, value=value, direction=direction, declared_type=declared_type
            )
        )
        return self

    def add_in(self, name: str, value: Any, declared_type: Any = None) -> "ParameterList":
        return self.add(name, value, Direction.IN, declared_type)

    def add_out(self, name: str, declared_type: Any = int, placeholder: Any = None) -> "ParameterList":
        return self.add(name, placeholder, Direction.OUT, declared_type)

    def add_inout(self, name: str, value: Any, declared_type: Any = None) -> "ParameterList":
        return self.add(name, value, Direction.INOUT, declared_type)

    @classmethod
    def of(cls, **values: Any) -> "ParameterList":
        """Shorthand for a list of input parameters."""
        params = cls()
        for name, value in values.items():
            params.add_in(name, value)
        return params

    def for_issuance(self) -> "ParameterList":
        """Copy of the list for one dispatch, outputs reset to their placeholders."""
        result = ParameterList(p.model_copy() for p in self)
        for param in result:
            if param.direction is Direction.OUT:
                param.value = placeholder_for(param.declared_type)
        return result

    def merged(self, other: "ParameterList") -> "ParameterList":
        """Return a new list with ``other`` appended; names must not clash."""
        result = ParameterList(p.model_copy() for p in self)
        for param in other:
            result._append(param.model_copy())
        return result

    # ------------------------------------------------------------------
    # Access
    def __iter__(self) -> Iterator[Parameter]:
        return iter(self._params.values())

    def __len__(self) -> int:
        return len(self._params)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._params

    def __repr__(self) -> str:
        inner = ", ".join(f"{p.name}={p.value!r}({p.direction.value})" for p in self)
        return f"ParameterList({inner})"

    def get(self, name: str) -> Optional[Parameter]:
        return self._params.get(name.lower())

    def value(self, name: str, default: Any = None) -> Any:
        param = self.get(name)
        return default if param is None else param.value

    def names(self) -> List[str]:
        return [p.name for p in self]

    def inputs(self) -> Dict[str, Any]:
        """Name to value mapping of parameters sent to the store."""
        return {p.name: p.value for p in self if p.direction.is_input}

    def outputs(self) -> Dict[str, Any]:
        """Name to value mapping of parameters returned by the store."""
        return {p.name: p.value for p in self if p.direction.is_output}

    def output_params(self) -> List[Parameter]:
        return [p for p in self if p.direction.is_output]

    def set_output(self, name: str, value: Any) -> None:
        param = self.get(name)
        if param is None or not param.direction.is_output:
            raise InvalidArgument(f"{name} is not an output parameter")
        param.value = value

    # ------------------------------------------------------------------
    def validate(self) -> None:
        """Check declared types and output placeholders.

        Raises:
            InvalidArgument: on the first offending parameter.
        """
        for param in self:
            if param.direction.is_input and not type_matches(param.value, param.declared_type):
                raise InvalidArgument(
                    f"Parameter {param.name} expects {_type_name(param.declared_type)}, "
                    f"got {type(param.value).__name__}"
                )
            if param.direction is Direction.OUT and param.value is None:
                param.value = placeholder_for(param.declared_type)


def _type_name(declared_type: Any) -> str:
    if isinstance(declared_type, tuple):
        return " | ".join(_type_name(t) for t in declared_type)
    return getattr(declared_type, "__name__", str(declared_type))
