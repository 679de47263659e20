"""Enumerations for the merge process."""

from enum import Enum


class MergeState(str, Enum):
    """Lifecycle of one merge run.

    CREATED → LOCKED → TRANSACTION_OPEN → PROCESSING → COMMITTED | ROLLED_BACK
    → LOCK_RELEASED. A run that cannot get the lock stops at CREATED.
    """

    CREATED = "created"
    LOCKED = "locked"
    TRANSACTION_OPEN = "transaction_open"
    PROCESSING = "processing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    LOCK_RELEASED = "lock_released"


class MergeTier(str, Enum):
    """Processing pass a table was merged in."""

    CORE = "core"  # Explicit per-table handlers
    EXTENSION = "extension"  # Registered deliver_merge_sql callbacks
    GENERIC = "generic"  # Everything else
