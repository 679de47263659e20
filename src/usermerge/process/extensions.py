"""Tier 2: tables merged by their owners.

Code that owns tables can register a `deliver_merge_sql(base_id, merge_id)`
callback returning `{table_name: [MergeQuery, ...]}`. The orchestrator calls
every registered callback; tables it returns are not touched by the generic
pass. Callbacks may be plain functions or coroutines.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass

from usermerge.errors import ExtensionError
from usermerge.merging.queries import MergeQuery

logger = logging.getLogger(__name__)

QueriesPerTable = Mapping[str, Sequence[MergeQuery]]
DeliverMergeSql = Callable[[int, int], QueriesPerTable | Awaitable[QueriesPerTable]]


@dataclass(frozen=True)
class Extension:
    name: str
    deliver_merge_sql: DeliverMergeSql


class ExtensionRegistry:
    """Registered extensions, called in registration order."""

    def __init__(self) -> None:
        self._extensions: list[Extension] = []

    def register(self, name: str, deliver_merge_sql: DeliverMergeSql) -> None:
        if any(ext.name == name for ext in self._extensions):
            msg = f"An extension named {name} is already registered"
            raise ValueError(msg)
        self._extensions.append(Extension(name, deliver_merge_sql))

    def __iter__(self) -> Iterator[Extension]:
        return iter(self._extensions)

    def __len__(self) -> int:
        return len(self._extensions)

    @staticmethod
    async def collect(
        extension: Extension, base_id: int, merge_id: int
    ) -> dict[str, list[MergeQuery]]:
        """Call one extension and normalise its answer.

        Raises:
            ExtensionError: If the callback raises or returns something that
                is not a mapping of table names to MergeQuery lists.
        """
        try:
            result = extension.deliver_merge_sql(base_id, merge_id)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            raise ExtensionError(extension.name, e) from e

        if not result:
            return {}
        if not isinstance(result, Mapping):
            raise ExtensionError(
                extension.name, TypeError(f"expected a mapping, got {type(result).__name__}")
            )

        queries_per_table: dict[str, list[MergeQuery]] = {}
        for table, queries in result.items():
            queries = list(queries)
            if not all(isinstance(q, MergeQuery) for q in queries):
                raise ExtensionError(
                    extension.name, TypeError(f"queries for {table} must be MergeQuery objects")
                )
            queries_per_table[table] = queries
        logger.debug("Extension %s delivered %d table(s)", extension.name, len(queries_per_table))
        return queries_per_table
