"""Immutable table metadata handed to the merge pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import Table


@dataclass(frozen=True)
class ColumnDescriptor:
    """A single column of a table."""

    name: str
    type: str


@dataclass(frozen=True)
class ForeignKeyDescriptor:
    """A (possibly composite) foreign key.

    local_columns[i] references ref_columns[i] of ref_table.
    """

    local_columns: tuple[str, ...]
    ref_table: str
    ref_columns: tuple[str, ...]


@dataclass(frozen=True)
class TableDescriptor:
    """Everything the merge pipeline needs to know about one table.

    Read fresh from the introspector for each merge run and never mutated.
    """

    name: str
    columns: tuple[ColumnDescriptor, ...]
    primary_key: tuple[str, ...]
    """Ordered primary key columns. May be composite, may be empty."""

    unique_constraints: tuple[tuple[str, ...], ...]
    """Unique constraints, unique indexes and the primary key, deduplicated."""

    foreign_keys: tuple[ForeignKeyDescriptor, ...] = ()

    table: Table | None = field(default=None, compare=False, repr=False)
    """Reflected SQLAlchemy table used to build statements."""

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    def has_column(self, name: str) -> bool:
        return name in self.column_names

    def sql_table(self) -> Table:
        """Return the reflected table, failing loudly for hand-built descriptors."""
        if self.table is None:
            msg = f"Table descriptor {self.name} carries no reflected table"
            raise ValueError(msg)
        return self.table
