"""Named store routines: the stored-procedure side of the call convention."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncConnection

from ..errors import InvalidArgument
from ..params import Direction, ParameterList, type_matches

logger = logging.getLogger(__name__)


class RoutineParameter(BaseModel):
    """Declared parameter of a routine."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str
    type: Optional[Any] = None
    direction: Direction = Direction.IN
    required: bool = True


class RoutineContext:
    """What a routine handler sees while it runs.

    The connection belongs to the caller's unit of work, so everything the
    handler executes joins the caller's transaction.
    """

    def __init__(self, connection: AsyncConnection, params: ParameterList) -> None:
        self.connection = connection
        self.params = params
        self.rows: List[Mapping[str, Any]] = []
        self.rows_affected = 0
        self.assigned: set[str] = set()

    def get(self, name: str, default: Any = None) -> Any:
        return self.params.value(name, default)

    def has(self, name: str) -> bool:
        return name in self.params

    def set_output(self, name: str, value: Any) -> None:
        """Assign an output value; ignored when the caller did not bind it."""
        self.assigned.add(name.lower())
        param = self.params.get(name)
        if param is not None and param.direction.is_output:
            param.value = value

    def add_rows(self, rows: Iterable[Mapping[str, Any]]) -> None:
        self.rows.extend(dict(r) for r in rows)


RoutineHandler = Callable[[RoutineContext], Awaitable[None]]


class Routine(BaseModel):
    """A registered routine and its parameter signature."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    handler: RoutineHandler
    parameters: tuple[RoutineParameter, ...] = ()

    def declared(self, name: str) -> Optional[RoutineParameter]:
        lowered = name.lower()
        return next((p for p in self.parameters if p.name.lower() == lowered), None)

    def check(self, params: ParameterList) -> None:
        """Validate a call against the signature.

        Raises:
            InvalidArgument: unknown name, wrong direction, type mismatch or a
                missing required input.
        """
        for param in params:
            decl = self.declared(param.name)
            if decl is None:
                raise InvalidArgument(f"{self.name}: unknown parameter {param.name}")
            if decl.direction.is_output and not decl.direction.is_input:
                if param.direction is not Direction.OUT:
                    raise InvalidArgument(
                        f"{self.name}: parameter {param.name} must be an output"
                    )
            elif decl.direction is Direction.IN and param.direction is not Direction.IN:
                raise InvalidArgument(f"{self.name}: parameter {param.name} is input only")
            if param.direction.is_input and not type_matches(param.value, decl.type):
                raise InvalidArgument(
                    f"{self.name}: parameter {param.name} has type "
                    f"{type(param.value).__name__}"
                )
        for decl in self.parameters:
            if decl.direction.is_input and decl.required and decl.name not in params:
                raise InvalidArgument(f"{self.name}: missing parameter {decl.name}")


class RoutineRegistry:
    """Case-insensitive registry of routines by name."""

    def __init__(self) -> None:
        self._routines: Dict[str, Routine] = {}

    def register(
        self,
        name: str,
        handler: RoutineHandler,
        parameters: Iterable[RoutineParameter] = (),
        replace: bool = False,
    ) -> Routine:
        key = name.lower()
        if key in self._routines and not replace:
            raise ValueError(f"Routine already registered: {name}")
        routine = Routine(name=name, handler=handler, parameters=tuple(parameters))
        self._routines[key] = routine
        logger.debug(f"Registered routine {name}")
        return routine

    def routine(
        self, name: str, parameters: Iterable[RoutineParameter] = ()
    ) -> Callable[[RoutineHandler], RoutineHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: RoutineHandler) -> RoutineHandler:
            self.register(name, handler, parameters)
            return handler

        return decorator

    def get(self, name: str) -> Optional[Routine]:
        return self._routines.get(name.lower())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._routines

    def names(self) -> List[str]:
        return sorted(r.name for r in self._routines.values())
