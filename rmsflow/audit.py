"""Identity and origin of the acting user, passed explicitly per request."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel

from .errors import InvalidArgument


@runtime_checkable
class AuditContext(Protocol):
    """Supplies the acting user for one request.

    Implementations are built per request and must never be shared across
    requests for different actors.
    """

    def current_actor_id(self) -> str:
        """Identifier of the maker or checker."""

    def current_origin_address(self) -> str:
        """Network address the request came from."""


class RequestAuditContext(BaseModel):
    """Plain audit context built from request data."""

    actor_id: str
    origin_address: str = ""

    def current_actor_id(self) -> str:
        return self.actor_id

    def current_origin_address(self) -> str:
        return self.origin_address


class AuditSnapshot(BaseModel):
    """Actor and origin captured once at the start of a request."""

    actor_id: str
    origin_address: str

    @classmethod
    def capture(cls, context: AuditContext) -> "AuditSnapshot":
        actor = context.current_actor_id()
        if not actor:
            raise InvalidArgument("Audit context has no acting user")
        return cls(actor_id=actor, origin_address=context.current_origin_address() or "")
