"""Planned merge operations and row selectors."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import Table, and_, or_
from sqlalchemy.engine import Dialect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.expression import ColumnElement, Executable

RowKey = tuple[tuple[str, Any], ...]
"""Identity of one row as (column, value) pairs, usually over the primary key."""


class QueryKind(str, Enum):
    """What a planned query does."""

    DELETE = "delete"
    UPDATE = "update"
    CUSTOM = "custom"  # Delivered by a core handler or an extension


@dataclass(frozen=True)
class MergeQuery:
    """One operation of a table's merge plan."""

    statement: Executable
    params: Mapping[str, Any] | None = None
    kind: QueryKind = QueryKind.CUSTOM

    def render(self, dialect: Dialect | None = None) -> str:
        """SQL text with bound values inlined where possible, for previews and logs."""
        try:
            compiled = self.statement.compile(  # type: ignore[attr-defined]
                dialect=dialect, compile_kwargs={"literal_binds": True}
            )
        except SQLAlchemyError:
            compiled = self.statement
        sql = " ".join(str(compiled).split())
        if self.params:
            sql += f" -- {dict(self.params)}"
        return sql


def row_selector(table: Table, row: RowKey) -> ColumnElement[bool]:
    """Match exactly one row: key columns are AND-combined."""
    return and_(*(table.c[column] == value for column, value in row))


def rows_selector(table: Table, rows: Sequence[RowKey]) -> ColumnElement[bool]:
    """Match any of the given rows: rows are OR-combined.

    Example: (id1 = 0 AND id2 = 3) OR (id1 = 5 AND id2 = 4)
    """
    return or_(*(row_selector(table, row) for row in rows))
