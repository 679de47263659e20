"""Storage execution interface used by the merge pipeline.

Thin wrapper around an AsyncConnection that gives the orchestrator exactly
the capabilities it relies on: executing statements, existence checks and
delegated transactions.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import Row, Table, literal, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction
from sqlalchemy.sql.expression import ColumnElement, Executable

logger = logging.getLogger(__name__)

# Dialects whose default configuration supports rollback of DML
TRANSACTIONAL_DIALECTS = frozenset(
    {"postgresql", "sqlite", "mysql", "mariadb", "oracle", "mssql"}
)


class MergeStorage:
    """Executes merge queries on one connection.

    All reads and writes of a merge run go through the same connection, so
    they observe the run's own uncommitted changes.
    """

    def __init__(self, connection: AsyncConnection) -> None:
        self._connection = connection

    @property
    def connection(self) -> AsyncConnection:
        return self._connection

    @property
    def dialect_name(self) -> str:
        return self._connection.dialect.name

    def supports_transactions(self) -> bool:
        """Whether the backend can roll back a merge run."""
        return self.dialect_name in TRANSACTIONAL_DIALECTS

    async def execute(
        self, statement: Executable, params: Mapping[str, Any] | None = None
    ) -> int:
        """Execute a statement and return the number of affected rows."""
        if params:
            result = await self._connection.execute(statement, dict(params))
        else:
            result = await self._connection.execute(statement)
        return result.rowcount

    async def query(
        self, statement: Executable, params: Mapping[str, Any] | None = None
    ) -> Sequence[Row[Any]]:
        """Execute a SELECT and return all rows."""
        if params:
            result = await self._connection.execute(statement, dict(params))
        else:
            result = await self._connection.execute(statement)
        return result.all()

    async def record_exists(self, table: Table, *criteria: ColumnElement[bool]) -> bool:
        """Whether at least one row of `table` matches all criteria."""
        stmt = select(literal(1)).select_from(table).where(*criteria).limit(1)
        result = await self._connection.execute(stmt)
        return result.first() is not None

    async def begin_transaction(self, *, transactional: bool = True) -> AsyncTransaction | None:
        """Begin a delegated transaction.

        When the caller already holds an open transaction a SAVEPOINT is used,
        so the caller keeps control over the final commit. Returns None when
        running without transaction support.
        """
        if not transactional:
            logger.warning("Merging without a transaction: changes can not be rolled back")
            return None
        if self._connection.in_transaction():
            logger.debug("Outer transaction found, using a savepoint")
            return await self._connection.begin_nested()
        return await self._connection.begin()

    async def commit(self, handle: AsyncTransaction | None) -> None:
        if handle is None:
            await self._connection.commit()
            return
        await handle.commit()

    async def rollback(self, handle: AsyncTransaction | None, reason: str) -> None:
        logger.info("Rolling back merge transaction: %s", reason)
        if handle is None:
            logger.warning("No transaction to roll back, statements already executed remain")
            await self._connection.rollback()
            return
        if handle.is_active:
            await handle.rollback()
