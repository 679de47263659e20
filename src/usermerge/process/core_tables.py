"""Tier 1: explicit handlers for core tables.

Some tables need more than the generic merge, e.g. the user table itself,
where the merge user's row is deleted once nothing references it anymore.
Handlers are registered by table name and validated once against the live
schema, so a typo in a table name fails loudly instead of being skipped.

A handler returns the list of queries for its table (the table is then
considered processed, even if the list is empty) or None when it does not
apply, in which case the table falls through to the generic pass.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass

from sqlalchemy import delete

from usermerge.config import Settings
from usermerge.errors import SchemaError
from usermerge.merging.generic import GenericTableMerger
from usermerge.merging.queries import MergeQuery, QueryKind
from usermerge.process.events import MergeContext
from usermerge.schema.introspector import SchemaIntrospector

logger = logging.getLogger(__name__)

CoreHandler = Callable[[GenericTableMerger, MergeContext], Awaitable[list[MergeQuery] | None]]


@dataclass(frozen=True)
class CoreTableHandler:
    table: str
    handler: CoreHandler
    deferred: bool = False
    """Run after every other table (but still claimed in Tier 1)."""


class CoreTableRegistry:
    """Ordered mapping of table name to its handler."""

    def __init__(self) -> None:
        self._handlers: dict[str, CoreTableHandler] = {}
        self._validated = False

    def register(self, table: str, handler: CoreHandler, *, deferred: bool = False) -> None:
        if table in self._handlers:
            msg = f"A core handler for {table} is already registered"
            raise ValueError(msg)
        self._handlers[table] = CoreTableHandler(table, handler, deferred)
        self._validated = False

    def __iter__(self) -> Iterator[CoreTableHandler]:
        return iter(self._handlers.values())

    def __contains__(self, table: object) -> bool:
        return table in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    @property
    def tables(self) -> list[str]:
        return list(self._handlers)

    async def validate(self, introspector: SchemaIntrospector) -> None:
        """Check once that every registered table exists.

        Raises:
            SchemaError: For the first registered table missing from the schema.
        """
        if self._validated:
            return
        existing = set(await introspector.list_tables())
        for table in self._handlers:
            if table not in existing:
                raise SchemaError(
                    f"A core handler is registered for {table}, which does not exist",
                    table=table,
                )
        self._validated = True


def delete_entity_handler(config: Settings) -> CoreHandler:
    """Deletes the merge user's own row, if configured to."""

    async def deliver_entity_queries(
        merger: GenericTableMerger, context: MergeContext
    ) -> list[MergeQuery] | None:
        if not config.delete_merge_entity:
            return []
        table = (await merger.describe(config.entity_table)).sql_table()
        key = table.c[config.entity_primary_key]
        return [MergeQuery(delete(table).where(key == context.merge_id), kind=QueryKind.DELETE)]

    return deliver_entity_queries


def explicit_columns_handler(table: str, columns: Sequence[str]) -> CoreHandler:
    """Generic merge with known reference columns, bypassing detection."""

    async def deliver_table_queries(
        merger: GenericTableMerger, context: MergeContext
    ) -> list[MergeQuery] | None:
        return await merger.get_queries(table, columns)

    return deliver_table_queries


def default_core_registry(config: Settings) -> CoreTableRegistry:
    registry = CoreTableRegistry()
    registry.register(config.entity_table, delete_entity_handler(config), deferred=True)
    for table, columns in config.reference_column_overrides.items():
        registry.register(table, explicit_columns_handler(table, columns))
    return registry
