"""Error taxonomy for the merge process.

Every failure inside a run surfaces as a subclass of MergeError:

- PreconditionError: raised before any storage mutation (same ids, lock
  unavailable, no transaction support, unknown user).
- SchemaError: schema metadata could not be read or does not match what a
  handler expects.
- TableMergeError / ExtensionError: a table's queries could not be built or
  executed.
- CommitError: storage rejected the final commit.
- ConflictInvariantError: the data already violates a uniqueness assumption.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class MergeError(Exception):
    """Base class for all merge failures."""

    code = "merge_failed"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        """Structured representation used by the API and CLI."""
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = {k: str(v) for k, v in self.details.items()}
        return {"error": payload}


class PreconditionError(MergeError):
    code = "precondition_failed"


class SameEntityError(PreconditionError):
    code = "same_entity"

    def __init__(self, entity_id: int) -> None:
        super().__init__(
            "You can not merge a user into itself", entity_id=entity_id
        )


class LockUnavailableError(PreconditionError):
    code = "merge_in_progress"

    def __init__(self, resource_key: str, timeout: float) -> None:
        super().__init__(
            "Could not retrieve the lock. There is probably another merge "
            "process going on right now. Please try again later.",
            resource_key=resource_key,
            timeout=timeout,
        )
        self.resource_key = resource_key


class TransactionsUnsupportedError(PreconditionError):
    code = "transactions_unsupported"

    def __init__(self, dialect: str, reason: str | None = None) -> None:
        super().__init__(
            reason or "Your database does not seem to support transactions",
            dialect=dialect,
        )


class EntityNotFoundError(PreconditionError):
    code = "entity_not_found"

    def __init__(self, role: str, entity_id: int) -> None:
        super().__init__(
            f"The {role} user {entity_id} does not exist", role=role, entity_id=entity_id
        )
        self.role = role
        self.entity_id = entity_id


class SchemaError(MergeError):
    code = "schema_error"

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        path: Path | str | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if table is not None:
            details["table"] = table
        if path is not None:
            details["path"] = path
        super().__init__(message, **details)
        self.table = table
        self.path = path


class TableMergeError(MergeError):
    """A table's queries could not be planned or executed."""

    code = "table_merge_failed"

    def __init__(self, table: str, tier: str, cause: BaseException) -> None:
        super().__init__(
            f"Failed to merge table {table} ({tier}): {cause}",
            table=table,
            tier=tier,
        )
        self.table = table
        self.tier = tier


class ExtensionError(MergeError):
    """A registered extension callback raised while delivering its queries."""

    code = "extension_failed"

    def __init__(self, extension: str, cause: BaseException) -> None:
        super().__init__(
            f"An exception occurred while trying to obtain the queries from {extension}: {cause}",
            extension=extension,
        )
        self.extension = extension


class CommitError(MergeError):
    code = "commit_failed"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"The transaction could not be committed: {cause}")


class ConflictInvariantError(MergeError):
    """More rows share one user id than a unique constraint allows.

    This indicates corrupt source data (or a detection bug), never an
    ordinary execution failure, so it is not retried or resolved.
    """

    code = "conflict_invariant_violated"

    def __init__(
        self, table: str, columns: tuple[str, ...], entity_id: int, row_count: int
    ) -> None:
        super().__init__(
            f"Table {table} holds {row_count} rows with {', '.join(columns)}={entity_id} "
            "although these columns are unique",
            table=table,
            columns=",".join(columns),
            entity_id=entity_id,
        )
        self.table = table
        self.columns = columns
