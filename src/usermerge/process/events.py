"""Outcome signals emitted while a merge runs.

The orchestrator reports every table, the transaction and the overall merge
to a MergeEventSink. The MergeContext of the run is passed to each call, so
sinks need no shared state to know which merge an event belongs to.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeContext:
    """Identifies one merge run."""

    base_id: int
    merge_id: int
    actor: str | None = None
    dry_run: bool = True
    run_id: UUID = field(default_factory=uuid4)


class MergeEventKind(str, Enum):
    """Kinds of outcome signals."""

    TABLE_SUCCESS = "table_success"
    TABLE_FAILURE = "table_failure"
    TRANSACTION_SUCCESS = "transaction_success"
    TRANSACTION_FAILURE = "transaction_failure"
    MERGE_SUCCESS = "merge_success"
    MERGE_FAILURE = "merge_failure"

    @property
    def is_failure(self) -> bool:
        return self.value.endswith("_failure")


def describe_event(kind: MergeEventKind, context: MergeContext, table: str | None = None) -> str:
    """Human-readable message for an event."""
    match kind:
        case MergeEventKind.TABLE_SUCCESS:
            return f"Successfully merged table {table}"
        case MergeEventKind.TABLE_FAILURE:
            return f"Failed to merge table {table}"
        case MergeEventKind.TRANSACTION_SUCCESS:
            return "The transaction was committed successfully"
        case MergeEventKind.TRANSACTION_FAILURE:
            return "The transaction could not be committed successfully"
        case MergeEventKind.MERGE_SUCCESS:
            return f"Succeeded to merge user id {context.merge_id} into user id {context.base_id}"
        case MergeEventKind.MERGE_FAILURE:
            return f"Failed to merge user id {context.merge_id} into user id {context.base_id}"


@dataclass(frozen=True)
class MergeEvent:
    """A recorded outcome signal."""

    kind: MergeEventKind
    run_id: UUID
    message: str
    table: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class MergeEventSink(Protocol):
    """Receiver of outcome signals."""

    def on_table_success(self, context: MergeContext, table: str) -> None: ...

    def on_table_failure(self, context: MergeContext, table: str) -> None: ...

    def on_transaction_success(self, context: MergeContext) -> None: ...

    def on_transaction_failure(self, context: MergeContext) -> None: ...

    def on_merge_success(self, context: MergeContext) -> None: ...

    def on_merge_failure(self, context: MergeContext) -> None: ...


class _DispatchingSink(ABC):
    """Routes all six signals through a single emit()."""

    @abstractmethod
    def emit(
        self, kind: MergeEventKind, context: MergeContext, table: str | None = None
    ) -> None: ...

    def on_table_success(self, context: MergeContext, table: str) -> None:
        self.emit(MergeEventKind.TABLE_SUCCESS, context, table)

    def on_table_failure(self, context: MergeContext, table: str) -> None:
        self.emit(MergeEventKind.TABLE_FAILURE, context, table)

    def on_transaction_success(self, context: MergeContext) -> None:
        self.emit(MergeEventKind.TRANSACTION_SUCCESS, context)

    def on_transaction_failure(self, context: MergeContext) -> None:
        self.emit(MergeEventKind.TRANSACTION_FAILURE, context)

    def on_merge_success(self, context: MergeContext) -> None:
        self.emit(MergeEventKind.MERGE_SUCCESS, context)

    def on_merge_failure(self, context: MergeContext) -> None:
        self.emit(MergeEventKind.MERGE_FAILURE, context)


class LoggingEventSink(_DispatchingSink):
    """Writes every signal to the `usermerge.process.events` logger."""

    def emit(self, kind: MergeEventKind, context: MergeContext, table: str | None = None) -> None:
        level = logging.ERROR if kind.is_failure else logging.INFO
        logger.log(
            level,
            "[merge %s%s] %s",
            context.run_id.hex[:8],
            " dry-run" if context.dry_run else "",
            describe_event(kind, context, table),
        )


class RecordingEventSink(_DispatchingSink):
    """Keeps every signal in memory, in emission order."""

    def __init__(self) -> None:
        self.events: list[MergeEvent] = []

    def emit(self, kind: MergeEventKind, context: MergeContext, table: str | None = None) -> None:
        self.events.append(
            MergeEvent(
                kind=kind,
                run_id=context.run_id,
                message=describe_event(kind, context, table),
                table=table,
            )
        )

    @property
    def kinds(self) -> list[MergeEventKind]:
        return [event.kind for event in self.events]

    def tables(self, kind: MergeEventKind) -> list[str]:
        """Tables reported with the given kind, in order."""
        return [event.table for event in self.events if event.kind == kind and event.table]


class CompositeEventSink(_DispatchingSink):
    """Forwards every signal to several sinks."""

    def __init__(self, *sinks: MergeEventSink) -> None:
        self.sinks = list(sinks)

    def emit(self, kind: MergeEventKind, context: MergeContext, table: str | None = None) -> None:
        for sink in self.sinks:
            match kind:
                case MergeEventKind.TABLE_SUCCESS:
                    sink.on_table_success(context, table or "")
                case MergeEventKind.TABLE_FAILURE:
                    sink.on_table_failure(context, table or "")
                case MergeEventKind.TRANSACTION_SUCCESS:
                    sink.on_transaction_success(context)
                case MergeEventKind.TRANSACTION_FAILURE:
                    sink.on_transaction_failure(context)
                case MergeEventKind.MERGE_SUCCESS:
                    sink.on_merge_success(context)
                case MergeEventKind.MERGE_FAILURE:
                    sink.on_merge_failure(context)
