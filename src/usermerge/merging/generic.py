"""Generic per-table merger.

Tries to keep as much data as possible: every reference to the merge user is
re-pointed to the base user, and only rows that would violate a unique
constraint are removed.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from usermerge.config import Settings
from usermerge.errors import SchemaError
from usermerge.merging.conflicts import (
    ConflictingConstraint,
    ConflictResolver,
    find_conflicting_constraints,
)
from usermerge.merging.planner import TableMergePlanner
from usermerge.merging.queries import MergeQuery
from usermerge.merging.reference_columns import (
    DEFAULT_REFERENCE_COLUMN_NAMES,
    detect_reference_columns,
)
from usermerge.schema.descriptors import TableDescriptor
from usermerge.schema.introspector import SchemaIntrospector
from usermerge.storage import MergeStorage

logger = logging.getLogger(__name__)


@dataclass
class TableAnalysis:
    """Static view of a table: what would be merged and what could conflict."""

    table: TableDescriptor
    reference_columns: tuple[str, ...]
    conflicting_constraints: list[ConflictingConstraint]

    @property
    def mergeable(self) -> bool:
        return bool(self.reference_columns)


def checked_reference_columns(
    table: TableDescriptor,
    overrides: Sequence[str] = (),
    *,
    allow_list: Sequence[str] = DEFAULT_REFERENCE_COLUMN_NAMES,
    entity_table: str = "user",
    entity_primary_key: str = "id",
) -> tuple[str, ...]:
    """Detect reference columns and check that they exist.

    Raises:
        SchemaError: If an explicitly named column is missing from the table.
    """
    columns = detect_reference_columns(
        table,
        overrides,
        allow_list=allow_list,
        entity_table=entity_table,
        entity_primary_key=entity_primary_key,
    )
    missing = [c for c in columns if not table.has_column(c)]
    if missing:
        raise SchemaError(
            f"Table {table.name} has no column(s) {', '.join(missing)}",
            table=table.name,
        )
    return columns


async def analyze_table(
    introspector: SchemaIntrospector,
    table_name: str,
    config: Settings,
    overrides: Sequence[str] = (),
) -> TableAnalysis:
    """Describe what merging `table_name` would involve, without any user ids."""
    table = await introspector.get_table(table_name)
    columns = checked_reference_columns(
        table,
        overrides or config.reference_column_overrides.get(table_name, ()),
        allow_list=config.reference_column_names,
        entity_table=config.entity_table,
        entity_primary_key=config.entity_primary_key,
    )
    return TableAnalysis(
        table=table,
        reference_columns=columns,
        conflicting_constraints=find_conflicting_constraints(table, columns),
    )


class GenericTableMerger:
    """Runs detection, conflict resolution and planning for one table at a time.

    Usage:
        merger = GenericTableMerger(storage, introspector, base_id=1, merge_id=2)
        queries = await merger.get_queries("user_enrolments", ["userid", "modifierid"])
    """

    def __init__(
        self,
        storage: MergeStorage,
        introspector: SchemaIntrospector,
        *,
        base_id: int,
        merge_id: int,
        allow_list: Sequence[str] = DEFAULT_REFERENCE_COLUMN_NAMES,
        entity_table: str = "user",
        entity_primary_key: str = "id",
    ) -> None:
        self.base_id = base_id
        self.merge_id = merge_id
        self._introspector = introspector
        self._allow_list = tuple(allow_list)
        self._entity_table = entity_table
        self._entity_primary_key = entity_primary_key
        self._resolver = ConflictResolver(storage)
        self._planner = TableMergePlanner(storage)

    @classmethod
    def from_settings(
        cls,
        storage: MergeStorage,
        introspector: SchemaIntrospector,
        config: Settings,
        *,
        base_id: int,
        merge_id: int,
    ) -> GenericTableMerger:
        return cls(
            storage,
            introspector,
            base_id=base_id,
            merge_id=merge_id,
            allow_list=config.reference_column_names,
            entity_table=config.entity_table,
            entity_primary_key=config.entity_primary_key,
        )

    async def describe(self, table_name: str) -> TableDescriptor:
        return await self._introspector.get_table(table_name)

    def reference_columns(
        self, table: TableDescriptor, overrides: Sequence[str] = ()
    ) -> tuple[str, ...]:
        return checked_reference_columns(
            table,
            overrides,
            allow_list=self._allow_list,
            entity_table=self._entity_table,
            entity_primary_key=self._entity_primary_key,
        )

    async def get_queries(
        self, table_name: str, reference_columns: Sequence[str] = ()
    ) -> list[MergeQuery]:
        """Return the queries that merge `table_name`, in execution order.

        Pass `reference_columns` to bypass detection for tables whose user
        columns are known up front.
        """
        table = await self._introspector.get_table(table_name)
        columns = self.reference_columns(table, reference_columns)
        if not columns:
            return []

        conflicts = await self._resolver.find_conflicts(
            table, columns, self.base_id, self.merge_id
        )
        queries = await self._planner.plan(
            table, columns, conflicts, self.base_id, self.merge_id
        )
        logger.debug(
            "%s: columns=%s conflicts=%d queries=%d",
            table_name,
            columns,
            len(conflicts),
            len(queries),
        )
        return queries
