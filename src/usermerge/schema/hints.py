"""Schema hints: metadata the database does not declare itself.

Many applications never create real foreign keys, so the only place that
knows `forum_posts.poster` points at `user.id` is an external schema
description. A hints file fills that gap:

    {
      "tables": {
        "forum_posts": {
          "foreign_keys": [
            {"columns": ["poster"], "ref_table": "user", "ref_columns": ["id"]}
          ],
          "unique": [["poster", "discussion"]]
        }
      }
    }
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from usermerge.errors import SchemaError


class ForeignKeyHint(BaseModel):
    """A foreign key that exists only in the application's schema description."""

    columns: list[str] = Field(min_length=1)
    ref_table: str
    ref_columns: list[str] = Field(min_length=1)


class TableHint(BaseModel):
    """Additional metadata for one table."""

    foreign_keys: list[ForeignKeyHint] = Field(default_factory=list)
    unique: list[list[str]] = Field(default_factory=list)


class SchemaHints(BaseModel):
    """Hints for all tables, keyed by table name."""

    tables: dict[str, TableHint] = Field(default_factory=dict)

    def for_table(self, name: str) -> TableHint | None:
        return self.tables.get(name)


def load_schema_hints(path: Path) -> SchemaHints:
    """Load and validate a schema hints file.

    Raises:
        SchemaError: If the file is missing, unreadable or not valid hints.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise SchemaError("Schema hints file not found", path=path) from e
    except OSError as e:
        raise SchemaError("Schema hints file is not readable", path=path) from e

    try:
        return SchemaHints.model_validate_json(raw)
    except ValidationError as e:
        raise SchemaError(f"Invalid schema hints file: {e.error_count()} error(s)", path=path) from e
