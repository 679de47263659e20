"""Builds the ordered list of queries that merges one table."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import delete, not_, update

from usermerge.merging.queries import MergeQuery, QueryKind, RowKey, rows_selector
from usermerge.schema.descriptors import TableDescriptor
from usermerge.storage import MergeStorage

logger = logging.getLogger(__name__)


class TableMergePlanner:
    """Turns reference columns and conflicting rows into a merge plan.

    The order is fixed: the delete for conflicting rows comes first, then one
    update per reference column in detection order. Updates never touch rows
    that are about to be deleted.
    """

    def __init__(self, storage: MergeStorage) -> None:
        self._storage = storage

    async def plan(
        self,
        table: TableDescriptor,
        reference_columns: Sequence[str],
        conflicting_rows: Sequence[RowKey],
        base_id: int,
        merge_id: int,
    ) -> list[MergeQuery]:
        if not reference_columns:
            return []

        sql_table = table.sql_table()
        queries: list[MergeQuery] = []

        # First: remove all rows that would violate a unique constraint
        if conflicting_rows:
            removal = rows_selector(sql_table, conflicting_rows)
            queries.append(
                MergeQuery(delete(sql_table).where(removal), kind=QueryKind.DELETE)
            )
            survivors = [not_(removal)]
        else:
            survivors = []

        # Second: re-point every column that still has rows to re-point
        for column in reference_columns:
            criteria = [sql_table.c[column] == merge_id, *survivors]
            if not await self._storage.record_exists(sql_table, *criteria):
                logger.debug("%s.%s: nothing to update", table.name, column)
                continue
            queries.append(
                MergeQuery(
                    update(sql_table).where(*criteria).values({column: base_id}),
                    kind=QueryKind.UPDATE,
                )
            )

        return queries
