"""The merge process: locking, tiers, transaction and outcome signals."""

from usermerge.process.core_tables import (
    CoreTableHandler,
    CoreTableRegistry,
    default_core_registry,
    delete_entity_handler,
    explicit_columns_handler,
)
from usermerge.process.enums import MergeState, MergeTier
from usermerge.process.events import (
    CompositeEventSink,
    LoggingEventSink,
    MergeContext,
    MergeEvent,
    MergeEventKind,
    MergeEventSink,
    RecordingEventSink,
)
from usermerge.process.extensions import Extension, ExtensionRegistry
from usermerge.process.locking import (
    AdvisoryLockFactory,
    InMemoryLockFactory,
    lock_factory_from_settings,
    lock_resource_key,
)
from usermerge.process.orchestrator import (
    MergeOrchestrator,
    MergeResult,
    MergeRun,
    TableOutcome,
)

__all__ = [
    "AdvisoryLockFactory",
    "CompositeEventSink",
    "CoreTableHandler",
    "CoreTableRegistry",
    "Extension",
    "ExtensionRegistry",
    "InMemoryLockFactory",
    "LoggingEventSink",
    "MergeContext",
    "MergeEvent",
    "MergeEventKind",
    "MergeEventSink",
    "MergeOrchestrator",
    "MergeResult",
    "MergeRun",
    "MergeState",
    "MergeTier",
    "RecordingEventSink",
    "TableOutcome",
    "default_core_registry",
    "delete_entity_handler",
    "explicit_columns_handler",
    "lock_factory_from_settings",
    "lock_resource_key",
]
