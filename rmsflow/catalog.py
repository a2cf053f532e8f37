"""Bundled entity definitions.

Field lists only: business rules for these entities live with their owners.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .store.engine import Store
from .workflow.entity import EntityDefinition
from .workflow.routines import register_entity


class Exchange(BaseModel):
    xchg_code: str = Field(min_length=1, max_length=10)
    xchg_prefix: int = 0
    broker_code: str = Field(default="", max_length=10)


class OrderGroup(BaseModel):
    group_code: int = Field(ge=1)
    group_desc: str = Field(min_length=1, max_length=100)
    group_type: Optional[str] = Field(default=None, max_length=20)
    group_value: Optional[str] = Field(default=None, max_length=50)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class ClientStock(BaseModel):
    branch_code: str = Field(min_length=1, max_length=10)
    client_code: str = Field(min_length=1, max_length=20)
    stock_code: str = Field(min_length=1, max_length=20)
    xchg_code: str = Field(min_length=1, max_length=10)
    open_free_balance: int = 0
    pending_free_balance: int = 0


EXCHANGE = EntityDefinition(
    name="exchange",
    table_name="exchange",
    model=Exchange,
    key_fields=("xchg_code",),
)

ORDER_GROUP = EntityDefinition(
    name="order_group",
    table_name="order_group",
    model=OrderGroup,
    key_fields=("group_code",),
)

CLIENT_STOCK = EntityDefinition(
    name="client_stock",
    table_name="client_stock",
    model=ClientStock,
    key_fields=("branch_code", "client_code", "stock_code"),
    notify_on_authorize=True,
    notify_endpoint="/update-share-holding",
)

ENTITIES: Dict[str, EntityDefinition] = {
    e.name: e for e in (EXCHANGE, ORDER_GROUP, CLIENT_STOCK)
}


def get_entity(name: str) -> EntityDefinition:
    try:
        return ENTITIES[name.lower().replace("-", "_")]
    except KeyError:
        raise ValueError(
            f"Unknown entity: {name} (expected one of {', '.join(sorted(ENTITIES))})"
        ) from None


def install(store: Store) -> List[EntityDefinition]:
    """Register tables and routines for every bundled entity."""
    for entity in ENTITIES.values():
        register_entity(store, entity)
    return list(ENTITIES.values())
