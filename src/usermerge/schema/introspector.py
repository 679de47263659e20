"""Schema introspection via SQLAlchemy reflection.

Produces TableDescriptor objects: columns, primary key, every uniqueness
constraint (unique constraints, unique indexes and the primary key) and
foreign keys, optionally augmented with a SchemaHints file.
"""

from __future__ import annotations

import logging

from sqlalchemy import Connection, MetaData, Table, inspect
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from usermerge.errors import SchemaError
from usermerge.schema.descriptors import (
    ColumnDescriptor,
    ForeignKeyDescriptor,
    TableDescriptor,
)
from usermerge.schema.hints import SchemaHints

logger = logging.getLogger(__name__)


def _dedupe(groups: list[tuple[str, ...]]) -> tuple[tuple[str, ...], ...]:
    """Drop repeated column groups, comparing them as sets, keeping first order."""
    seen: set[frozenset[str]] = set()
    result: list[tuple[str, ...]] = []
    for group in groups:
        key = frozenset(group)
        if group and key not in seen:
            seen.add(key)
            result.append(group)
    return tuple(result)


class SchemaIntrospector:
    """Reads table metadata from a live connection.

    Usage:
        async with engine.connect() as conn:
            introspector = SchemaIntrospector(conn)
            table = await introspector.get_table("user_enrolments")
    """

    def __init__(self, connection: AsyncConnection, hints: SchemaHints | None = None) -> None:
        self._connection = connection
        self._hints = hints or SchemaHints()

    async def list_tables(self) -> list[str]:
        """Return all table names of the default schema."""
        try:
            return await self._connection.run_sync(
                lambda sync_conn: inspect(sync_conn).get_table_names()
            )
        except SQLAlchemyError as e:
            raise SchemaError(f"Could not list tables: {e}") from e

    async def get_table(self, name: str) -> TableDescriptor:
        """Describe one table.

        Raises:
            SchemaError: If the table does not exist or cannot be reflected.
        """
        try:
            return await self._connection.run_sync(self._describe, name)
        except NoSuchTableError as e:
            raise SchemaError(f"Table {name} does not exist", table=name) from e
        except SQLAlchemyError as e:
            raise SchemaError(f"Could not read the schema of {name}: {e}", table=name) from e

    def _describe(self, sync_conn: Connection, name: str) -> TableDescriptor:
        inspector = inspect(sync_conn)
        table = Table(name, MetaData(), autoload_with=sync_conn)

        columns = tuple(
            ColumnDescriptor(column.name, type(column.type).__name__)
            for column in table.columns
        )
        primary_key = tuple(column.name for column in table.primary_key.columns)

        unique: list[tuple[str, ...]] = []
        if primary_key:
            unique.append(primary_key)
        for constraint in inspector.get_unique_constraints(name):
            unique.append(tuple(constraint["column_names"]))
        for index in inspector.get_indexes(name):
            column_names = index["column_names"]
            # Expression indexes report None for their computed parts
            if index["unique"] and all(column_names):
                unique.append(tuple(column_names))  # type: ignore[arg-type]

        foreign_keys = [
            ForeignKeyDescriptor(
                local_columns=tuple(fk["constrained_columns"]),
                ref_table=fk["referred_table"],
                ref_columns=tuple(fk["referred_columns"]),
            )
            for fk in inspector.get_foreign_keys(name)
        ]

        hint = self._hints.for_table(name)
        if hint is not None:
            unique.extend(tuple(group) for group in hint.unique)
            foreign_keys.extend(
                ForeignKeyDescriptor(
                    local_columns=tuple(fk.columns),
                    ref_table=fk.ref_table,
                    ref_columns=tuple(fk.ref_columns),
                )
                for fk in hint.foreign_keys
            )

        descriptor = TableDescriptor(
            name=name,
            columns=columns,
            primary_key=primary_key,
            unique_constraints=_dedupe(unique),
            foreign_keys=tuple(foreign_keys),
            table=table,
        )
        self._check_columns(descriptor)
        logger.debug(
            "Described %s: pk=%s unique=%s fks=%d",
            name,
            primary_key,
            descriptor.unique_constraints,
            len(descriptor.foreign_keys),
        )
        return descriptor

    @staticmethod
    def _check_columns(descriptor: TableDescriptor) -> None:
        """Every constraint column must exist (hints can be stale)."""
        known = set(descriptor.column_names)
        referenced = [c for group in descriptor.unique_constraints for c in group]
        referenced += [c for fk in descriptor.foreign_keys for c in fk.local_columns]
        missing = sorted({c for c in referenced if c not in known})
        if missing:
            raise SchemaError(
                f"Table {descriptor.name} has no column(s) {', '.join(missing)}",
                table=descriptor.name,
            )
