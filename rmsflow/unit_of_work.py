"""Transaction scope grouping command issuances into one atomic unit."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction

from .errors import TransactionStateError

if TYPE_CHECKING:
    from .store.engine import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UnitOfWork:
    """One logical connection with at most one open transaction.

    A unit of work is owned by a single operation and must not be shared
    between concurrent tasks. Nesting is not supported: :meth:`begin` on an
    open scope raises :class:`TransactionStateError`.
    """

    def __init__(self, store: "Store") -> None:
        self.store = store
        self._connection: Optional[AsyncConnection] = None
        self._transaction: Optional[AsyncTransaction] = None

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None and self._transaction.is_active

    async def connection(self) -> AsyncConnection:
        if self._connection is None:
            self._connection = await self.store.engine.connect()
        return self._connection

    # ------------------------------------------------------------------
    async def begin(self) -> None:
        if self.in_transaction:
            raise TransactionStateError("A transaction is already open on this unit of work")
        conn = await self.connection()
        self._transaction = await conn.begin()
        logger.debug("Transaction started")

    async def commit(self) -> None:
        if not self.in_transaction:
            raise TransactionStateError("No active transaction to commit")
        transaction, self._transaction = self._transaction, None
        await transaction.commit()
        logger.debug("Transaction committed")

    async def rollback(self) -> None:
        if not self.in_transaction:
            logger.warning("No active transaction to rollback")
            return
        transaction, self._transaction = self._transaction, None
        await transaction.rollback()
        logger.debug("Transaction rolled back")

    async def run_in_transaction(self, action: Callable[[], Awaitable[T]]) -> T:
        """Run ``action`` inside a new transaction.

        Commits when ``action`` returns; rolls back and re-raises the original
        exception on any failure, including task cancellation.
        """
        await self.begin()
        try:
            result = await action()
        except BaseException:
            await self._rollback_after_failure()
            raise
        await self.commit()
        return result

    async def _rollback_after_failure(self) -> None:
        try:
            await self.rollback()
        except Exception as exc:
            logger.error(f"Rollback failed after an error in the transaction: {exc}")

    @asynccontextmanager
    async def statement_scope(self) -> AsyncIterator[AsyncConnection]:
        """Connection for one command.

        Joins the open transaction when there is one; otherwise the command
        runs in its own short transaction that commits on success.
        """
        conn = await self.connection()
        if self.in_transaction:
            yield conn
            return
        async with conn.begin():
            yield conn

    async def close(self) -> None:
        if self.in_transaction:
            await self._rollback_after_failure()
        if self._connection is not None:
            connection, self._connection = self._connection, None
            await connection.close()
