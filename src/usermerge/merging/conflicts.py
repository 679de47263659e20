"""Conflict detection for re-pointing user references.

A conflict is caused when:
- a column holding a user id is changed from the merge user to the base user,
- that column is part of a unique constraint (unique key, unique index or
  primary key), and
- another row already holds the base user together with the same values for
  all other columns of that constraint.

Only rows that are genuinely blocked get removed, and it is always the row
of the merge user that goes: the base user's data wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations

from sqlalchemy import Table, and_, select

from usermerge.errors import ConflictInvariantError
from usermerge.merging.queries import RowKey
from usermerge.schema.descriptors import TableDescriptor
from usermerge.storage import MergeStorage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictingConstraint:
    """A unique constraint that contains at least one reference column."""

    columns: tuple[str, ...]
    reference_columns: tuple[str, ...]
    """The reference columns inside the constraint, in detection order."""

    def column_groups(self) -> list[tuple[str, ...]]:
        """Reference column groups that may move together, smallest first.

        Single columns come first; larger groups cover rows where several
        reference columns hold the same user at once.
        """
        groups: list[tuple[str, ...]] = []
        for size in range(1, len(self.reference_columns) + 1):
            groups.extend(combinations(self.reference_columns, size))
        return groups


def find_conflicting_constraints(
    table: TableDescriptor, reference_columns: tuple[str, ...]
) -> list[ConflictingConstraint]:
    """Unique constraints of `table` that a reference rewrite could violate."""
    conflicting = []
    for constraint in table.unique_constraints:
        inside = tuple(c for c in reference_columns if c in constraint)
        if inside:
            conflicting.append(ConflictingConstraint(columns=constraint, reference_columns=inside))
    return conflicting


class ConflictResolver:
    """Finds rows that must be removed before references can be rewritten.

    Usage:
        resolver = ConflictResolver(storage)
        rows = await resolver.find_conflicts(table, ("userid",), base_id=1, merge_id=2)
    """

    def __init__(self, storage: MergeStorage) -> None:
        self._storage = storage

    async def find_conflicts(
        self,
        table: TableDescriptor,
        reference_columns: tuple[str, ...],
        base_id: int,
        merge_id: int,
    ) -> list[RowKey]:
        """Return the keys of all merge-side rows that would collide.

        Rows are deduplicated across constraints and column groups, in
        first-seen order.

        Raises:
            ConflictInvariantError: If more than one row holds the same user
                under a constraint made of reference columns only.
        """
        constraints = find_conflicting_constraints(table, reference_columns)
        if not constraints:
            return []

        sql_table = table.sql_table()
        found: dict[RowKey, None] = {}

        for constraint in constraints:
            # Without a primary key the constraint itself identifies the row
            key_columns = table.primary_key or constraint.columns

            for group in constraint.column_groups():
                peers = tuple(c for c in constraint.columns if c not in group)
                if peers:
                    rows = await self._paired_rows(
                        sql_table, key_columns, group, peers, base_id, merge_id
                    )
                else:
                    rows = await self._identity_only_rows(
                        table.name, sql_table, key_columns, group, base_id, merge_id
                    )

                if rows:
                    logger.debug(
                        "%s: %d conflicting row(s) on %s via %s",
                        table.name,
                        len(rows),
                        constraint.columns,
                        group,
                    )
                for row in rows:
                    found.setdefault(row, None)

        return list(found)

    async def _paired_rows(
        self,
        sql_table: Table,
        key_columns: tuple[str, ...],
        group: tuple[str, ...],
        peers: tuple[str, ...],
        base_id: int,
        merge_id: int,
    ) -> list[RowKey]:
        """Self-join merge-side rows against base-side rows on equal peers.

        SELECT a.<key> FROM t a
        JOIN (SELECT <peers> FROM t WHERE <group> = :base) b ON a.<peer> = b.<peer> ...
        WHERE a.<group> = :merge
        """
        a = sql_table.alias("a")
        b = (
            select(*(sql_table.c[peer] for peer in peers))
            .where(*(sql_table.c[column] == base_id for column in group))
            .subquery("b")
        )
        on_clause = and_(*(a.c[peer] == b.c[peer] for peer in peers))
        stmt = (
            select(*(a.c[column] for column in key_columns))
            .select_from(a.join(b, on_clause))
            .where(*(a.c[column] == merge_id for column in group))
            .distinct()
        )
        rows = await self._storage.query(stmt)
        return [tuple(zip(key_columns, row, strict=True)) for row in rows]

    async def _identity_only_rows(
        self,
        table_name: str,
        sql_table: Table,
        key_columns: tuple[str, ...],
        group: tuple[str, ...],
        base_id: int,
        merge_id: int,
    ) -> list[RowKey]:
        """Constraint consists of reference columns only.

        Each user can own at most one such row, so the merge user's row
        conflicts as soon as the base user has one too.
        """
        found: dict[int, list[RowKey]] = {}
        for entity_id in (base_id, merge_id):
            stmt = select(*(sql_table.c[column] for column in key_columns)).where(
                *(sql_table.c[column] == entity_id for column in group)
            )
            rows = await self._storage.query(stmt)
            if len(rows) > 1:
                raise ConflictInvariantError(table_name, group, entity_id, len(rows))
            found[entity_id] = [tuple(zip(key_columns, row, strict=True)) for row in rows]

        if found[base_id] and found[merge_id]:
            return found[merge_id]
        return []
