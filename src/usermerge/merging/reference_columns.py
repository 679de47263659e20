"""Detection of columns that hold a reference to the merged user."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from usermerge.schema.descriptors import TableDescriptor

# Be _very_ conservative when adding names here: a column with one of these
# names MUST hold a user id in every table it appears in.
DEFAULT_REFERENCE_COLUMN_NAMES: tuple[str, ...] = (
    "authorid",
    "reviewerid",
    "userid",
    "user_id",
    "id_user",
    "user",
)


def _unique(names: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(names))


def detect_reference_columns(
    table: TableDescriptor,
    overrides: Sequence[str] = (),
    *,
    allow_list: Sequence[str] = DEFAULT_REFERENCE_COLUMN_NAMES,
    entity_table: str = "user",
    entity_primary_key: str = "id",
) -> tuple[str, ...]:
    """Return the columns of `table` that reference the entity's primary key.

    Explicit overrides win and skip all heuristics. Otherwise the result is
    the union of table columns named in `allow_list` (in table order) and the
    local columns of foreign keys pointing at `entity_table.entity_primary_key`.

    An empty result means there is nothing to merge in this table.
    """
    if overrides:
        return _unique(overrides)

    allowed = set(allow_list)
    detected = [name for name in table.column_names if name in allowed]

    for fk in table.foreign_keys:
        if fk.ref_table != entity_table:
            continue
        for local_column, ref_column in zip(fk.local_columns, fk.ref_columns, strict=False):
            if ref_column == entity_primary_key:
                detected.append(local_column)

    return _unique(detected)
