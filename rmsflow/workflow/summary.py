"""Pending and denied counts across every registered entity."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field

from ..command import Command
from ..errors import DomainError, RmsFlowError
from ..executor import CommandExecutor
from ..params import ParameterList
from ..store.engine import Store
from .entity import EntityDefinition
from .routines import register_entity
from .states import AuthState, DeleteStatus

logger = logging.getLogger(__name__)


class WorkflowItem(BaseModel):
    module: str
    auth_state: AuthState
    total_records: int


class WorkflowSummary(BaseModel):
    total_unauthorized: int = 0
    total_denied: int = 0
    unauthorized_items: List[WorkflowItem] = Field(default_factory=list)
    denied_items: List[WorkflowItem] = Field(default_factory=list)


class WorkflowSummaryService:
    """Counts the checker queue and the denied list for each entity."""

    def __init__(self, store: Store, entities: Iterable[EntityDefinition]) -> None:
        self.store = store
        self.entities = list(entities)
        for entity in self.entities:
            register_entity(store, entity)

    def _count_sql(self, entity: EntityDefinition, by_maker: bool) -> str:
        table = self.store.engine.dialect.identifier_preparer.quote(entity.table_ref)
        sql = (
            f"SELECT COUNT(*) FROM {table} "
            f"WHERE is_deleted = {int(DeleteStatus.ACTIVE)} AND auth_state = :IsAuth"
        )
        if by_maker:
            sql += " AND maker_id = :MakerId"
        return sql

    async def items(
        self,
        state: AuthState,
        maker_id: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> List[WorkflowItem]:
        """One item per entity that has records in ``state``."""
        result: List[WorkflowItem] = []
        async with self.store.unit_of_work() as uow:
            executor = CommandExecutor(uow)
            # Counts share one connection and are issued one at a time.
            for entity in self.entities:
                params = ParameterList().add_in("IsAuth", int(state), int)
                if maker_id:
                    params.add_in("MakerId", maker_id, str)
                count = await executor.query_scalar(
                    Command.text(self._count_sql(entity, bool(maker_id)), params),
                    int,
                    cancel=cancel,
                )
                if count:
                    result.append(
                        WorkflowItem(module=entity.name, auth_state=state, total_records=count)
                    )
        return result

    async def summary(
        self, maker_id: Optional[str] = None, cancel: Optional[asyncio.Event] = None
    ) -> WorkflowSummary:
        logger.info(f"Building workflow summary for {maker_id or 'all makers'}")
        try:
            unauthorized = await self.items(AuthState.UNAUTHORIZED, maker_id, cancel)
            denied = await self.items(AuthState.DENIED, maker_id, cancel)
        except RmsFlowError:
            raise
        except Exception as exc:
            logger.error(f"Error getting workflow summary: {exc}")
            raise DomainError(f"Failed to retrieve workflow summary: {exc}") from exc
        summary = WorkflowSummary(
            total_unauthorized=sum(i.total_records for i in unauthorized),
            total_denied=sum(i.total_records for i in denied),
            unauthorized_items=unauthorized,
            denied_items=denied,
        )
        logger.debug(
            f"Workflow summary: {summary.total_unauthorized} unauthorized, "
            f"{summary.total_denied} denied"
        )
        return summary
