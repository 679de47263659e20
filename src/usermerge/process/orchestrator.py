"""The merge process: lock, transaction, three tiers of tables, commit or rollback.

Order of work inside one run:
1. Tier 1: explicit core handlers (the user table and configured tables).
2. Tier 2: queries delivered by registered extensions.
3. Tier 3: every remaining table through the generic merger.
4. Deferred core handlers (deleting the merge user's own row).

Everything happens inside one (delegated) transaction: either every table is
merged or none is. The lock is released on every exit path.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction

from usermerge.config import Settings, settings
from usermerge.errors import (
    CommitError,
    EntityNotFoundError,
    LockUnavailableError,
    MergeError,
    SameEntityError,
    TableMergeError,
    TransactionsUnsupportedError,
)
from usermerge.merging.generic import GenericTableMerger
from usermerge.merging.queries import MergeQuery
from usermerge.process.core_tables import CoreTableRegistry, default_core_registry
from usermerge.process.enums import MergeState, MergeTier
from usermerge.process.events import LoggingEventSink, MergeContext, MergeEventSink
from usermerge.process.extensions import ExtensionRegistry
from usermerge.process.locking import LockFactory, lock_factory_from_settings, lock_resource_key
from usermerge.schema.hints import SchemaHints, load_schema_hints
from usermerge.schema.introspector import SchemaIntrospector
from usermerge.storage import MergeStorage

logger = logging.getLogger(__name__)


@dataclass
class TableOutcome:
    """What happened to one table."""

    table: str
    tier: MergeTier
    queries: int
    rows_affected: int
    success: bool


@dataclass
class MergeRun:
    """Mutable state of a run in progress."""

    context: MergeContext
    states: list[MergeState] = field(default_factory=lambda: [MergeState.CREATED])
    processed_tables: set[str] = field(default_factory=set)  # pyright: ignore[reportUnknownVariableType]
    outcomes: list[TableOutcome] = field(default_factory=list)  # pyright: ignore[reportUnknownVariableType]

    @property
    def state(self) -> MergeState:
        return self.states[-1]

    def advance(self, state: MergeState) -> None:
        logger.debug("Merge %s: %s -> %s", self.context.run_id.hex[:8], self.state.value, state.value)
        self.states.append(state)


@dataclass
class MergeResult:
    """Result of a successful merge run (committed or dry run)."""

    run_id: UUID
    base_id: int
    merge_id: int
    dry_run: bool
    committed: bool
    tables: list[TableOutcome]
    states: list[MergeState]

    @property
    def rows_affected(self) -> int:
        return sum(outcome.rows_affected for outcome in self.tables)

    def __str__(self) -> str:
        verb = "Dry run merged" if self.dry_run else "Merged"
        return (
            f"{verb} user {self.merge_id} into {self.base_id}: "
            f"{len(self.tables)} table(s), {self.rows_affected} row(s) affected"
        )


class MergeOrchestrator:
    """Merges one user into another across the whole schema.

    Usage:
        async with engine.connect() as conn:
            orchestrator = MergeOrchestrator(conn)
            result = await orchestrator.merge(base_id=3, merge_id=7, dry_run=False)
    """

    def __init__(
        self,
        connection: AsyncConnection,
        *,
        config: Settings = settings,
        sink: MergeEventSink | None = None,
        core_tables: CoreTableRegistry | None = None,
        extensions: ExtensionRegistry | None = None,
        lock_factory: LockFactory | None = None,
        hints: SchemaHints | None = None,
    ) -> None:
        self._storage = MergeStorage(connection)
        self._config = config
        self._sink: MergeEventSink = sink or LoggingEventSink()
        self._core_tables = core_tables if core_tables is not None else default_core_registry(config)
        self._extensions = extensions if extensions is not None else ExtensionRegistry()
        self._lock_factory = lock_factory or lock_factory_from_settings(config, connection.engine)
        self._hints = hints
        self.last_run: MergeRun | None = None

    async def merge(
        self,
        base_id: int,
        merge_id: int,
        *,
        actor: str | None = None,
        dry_run: bool | None = None,
    ) -> MergeResult:
        """Merge `merge_id` into `base_id`.

        Args:
            base_id: The user that stays.
            merge_id: The user that goes.
            actor: Who started the merge (lock scope and audit).
            dry_run: Roll back at the end regardless of success. Defaults to
                `settings.dry_run_default`.

        Returns:
            MergeResult describing every merged table.

        Raises:
            PreconditionError: Nothing was attempted (same ids, lock busy,
                no transaction support, unknown user).
            MergeError: The run failed and was rolled back.
        """
        if dry_run is None:
            dry_run = self._config.dry_run_default
        context = MergeContext(base_id=base_id, merge_id=merge_id, actor=actor, dry_run=dry_run)
        run = MergeRun(context)
        self.last_run = run

        transactional = self._check_preconditions(context)

        resource_key = lock_resource_key(self._config.lock_scope, actor)
        lock = await self._lock_factory.acquire(resource_key, self._config.lock_timeout)
        if lock is None:
            raise LockUnavailableError(resource_key, self._config.lock_timeout)
        run.advance(MergeState.LOCKED)

        try:
            handle = await self._storage.begin_transaction(transactional=transactional)
            run.advance(MergeState.TRANSACTION_OPEN)
            try:
                run.advance(MergeState.PROCESSING)
                await self._merge_tables(run)
            except Exception as e:
                await self._abort(run, handle, e)
                raise
            await self._finish(run, handle)
        finally:
            await lock.release()
            run.advance(MergeState.LOCK_RELEASED)

        return MergeResult(
            run_id=context.run_id,
            base_id=base_id,
            merge_id=merge_id,
            dry_run=dry_run,
            committed=MergeState.COMMITTED in run.states,
            tables=list(run.outcomes),
            states=list(run.states),
        )

    def _check_preconditions(self, context: MergeContext) -> bool:
        """Fail fast before touching storage. Returns whether to use a transaction."""
        if context.base_id == context.merge_id:
            raise SameEntityError(context.base_id)

        if self._storage.supports_transactions():
            return True
        if context.dry_run:
            raise TransactionsUnsupportedError(
                self._storage.dialect_name, "A dry run needs a database with transaction support"
            )
        if not self._config.merge_without_transaction:
            raise TransactionsUnsupportedError(self._storage.dialect_name)
        return False

    async def _finish(self, run: MergeRun, handle: AsyncTransaction | None) -> None:
        context = run.context
        if context.dry_run:
            await self._storage.rollback(handle, "dry run")
            run.advance(MergeState.ROLLED_BACK)
            self._sink.on_merge_success(context)
            return

        try:
            await self._storage.commit(handle)
        except Exception as e:
            self._sink.on_transaction_failure(context)
            await self._rollback_quietly(handle, f"commit failed: {e}")
            run.advance(MergeState.ROLLED_BACK)
            self._sink.on_merge_failure(context)
            raise CommitError(e) from e

        run.advance(MergeState.COMMITTED)
        self._sink.on_transaction_success(context)
        self._sink.on_merge_success(context)

    async def _abort(self, run: MergeRun, handle: AsyncTransaction | None, error: Exception) -> None:
        self._sink.on_merge_failure(run.context)
        await self._rollback_quietly(handle, f"merge failed: {error}")
        run.advance(MergeState.ROLLED_BACK)

    async def _rollback_quietly(self, handle: AsyncTransaction | None, reason: str) -> None:
        """Roll back, retrying once; failures are logged, never raised over the original error."""
        for attempt in (1, 2):
            try:
                await self._storage.rollback(handle, reason)
                return
            except Exception:
                logger.exception("Rollback attempt %d failed", attempt)

    async def _merge_tables(self, run: MergeRun) -> None:
        context = run.context
        introspector = SchemaIntrospector(self._storage.connection, self._load_hints())
        merger = GenericTableMerger.from_settings(
            self._storage,
            introspector,
            self._config,
            base_id=context.base_id,
            merge_id=context.merge_id,
        )

        if self._config.require_existing_entities:
            await self._check_entities_exist(merger, context)
        await self._core_tables.validate(introspector)

        # First: core tables
        deferred: dict[str, list[MergeQuery]] = {}
        for core in self._core_tables:
            queries = await self._plan(run, core.table, MergeTier.CORE, core.handler(merger, context))
            if queries is None:
                logger.debug("Core handler for %s does not apply", core.table)
                continue
            run.processed_tables.add(core.table)
            if core.deferred:
                deferred[core.table] = queries
            else:
                await self._execute_table(run, core.table, MergeTier.CORE, queries)

        # Second: tables owned by extensions
        for extension in self._extensions:
            queries_per_table = await self._extensions.collect(
                extension, context.base_id, context.merge_id
            )
            for table, queries in queries_per_table.items():
                if table in run.processed_tables:
                    logger.warning(
                        "Extension %s delivered queries for %s, which is already merged; skipping",
                        extension.name,
                        table,
                    )
                    continue
                run.processed_tables.add(table)
                await self._execute_table(run, table, MergeTier.EXTENSION, queries)

        # Third: all other tables
        skipped = set(self._config.skip_tables)
        remaining = set(await introspector.list_tables()) - run.processed_tables - skipped
        for table in sorted(remaining):
            queries = await self._plan(run, table, MergeTier.GENERIC, merger.get_queries(table))
            run.processed_tables.add(table)
            await self._execute_table(run, table, MergeTier.GENERIC, queries or [])

        # Last: core work that must wait until nothing references the merge user
        for table, queries in deferred.items():
            await self._execute_table(run, table, MergeTier.CORE, queries)

    def _load_hints(self) -> SchemaHints | None:
        if self._hints is None and self._config.schema_hints_path is not None:
            self._hints = load_schema_hints(self._config.schema_hints_path)
        return self._hints

    async def _check_entities_exist(self, merger: GenericTableMerger, context: MergeContext) -> None:
        table = (await merger.describe(self._config.entity_table)).sql_table()
        key = table.c[self._config.entity_primary_key]
        for role, entity_id in (("base", context.base_id), ("merge", context.merge_id)):
            if not await self._storage.record_exists(table, key == entity_id):
                raise EntityNotFoundError(role, entity_id)

    async def _plan(
        self,
        run: MergeRun,
        table: str,
        tier: MergeTier,
        planning: Awaitable[list[MergeQuery] | None],
    ) -> list[MergeQuery] | None:
        """Await a table's plan, reporting the table as failed if planning fails."""
        try:
            return await planning
        except MergeError:
            self._sink.on_table_failure(run.context, table)
            raise
        except SQLAlchemyError as e:
            self._sink.on_table_failure(run.context, table)
            raise TableMergeError(table, tier.value, e) from e

    async def _execute_table(
        self, run: MergeRun, table: str, tier: MergeTier, queries: list[MergeQuery]
    ) -> None:
        if not queries:
            return

        rows_affected = 0
        dialect = self._storage.connection.dialect
        for query in queries:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("%s: %s", table, query.render(dialect))
            try:
                rows_affected += max(
                    await self._storage.execute(query.statement, query.params), 0
                )
            except Exception as e:
                run.outcomes.append(
                    TableOutcome(table, tier, len(queries), rows_affected, success=False)
                )
                self._sink.on_table_failure(run.context, table)
                raise TableMergeError(table, tier.value, e) from e

        run.outcomes.append(TableOutcome(table, tier, len(queries), rows_affected, success=True))
        self._sink.on_table_success(run.context, table)
