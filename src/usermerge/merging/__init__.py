"""Per-table merge pipeline.

Submodules:
- reference_columns: which columns hold a user id
- conflicts: which rows would violate a unique constraint after the rewrite
- planner: delete + update queries for one table
- generic: the three steps above wired together
"""

from usermerge.merging.conflicts import ConflictResolver, find_conflicting_constraints
from usermerge.merging.generic import (
    GenericTableMerger,
    TableAnalysis,
    analyze_table,
    checked_reference_columns,
)
from usermerge.merging.planner import TableMergePlanner
from usermerge.merging.queries import MergeQuery, QueryKind, RowKey
from usermerge.merging.reference_columns import (
    DEFAULT_REFERENCE_COLUMN_NAMES,
    detect_reference_columns,
)

__all__ = [
    "DEFAULT_REFERENCE_COLUMN_NAMES",
    "ConflictResolver",
    "GenericTableMerger",
    "MergeQuery",
    "QueryKind",
    "RowKey",
    "TableAnalysis",
    "TableMergePlanner",
    "analyze_table",
    "checked_reference_columns",
    "detect_reference_columns",
    "find_conflicting_constraints",
]
