"""Named locks that keep two merge processes from running at once.

Two backends:
- InMemoryLockFactory: asyncio locks, only excludes runs in the same process.
- AdvisoryLockFactory: PostgreSQL session advisory locks held on a dedicated
  connection, so they exclude runs across processes and hosts.

Acquisition blocks up to the timeout, then gives up and returns None.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from usermerge.config import Settings

logger = logging.getLogger(__name__)

LOCK_TYPE = "usermerge_merge_process"


def lock_resource_key(scope: str, actor: str | None = None) -> str:
    """Resource key for a merge lock.

    `global` serialises every merge; `actor` only serialises merges started
    by the same operator.
    """
    if scope == "actor":
        return f"{LOCK_TYPE}:user:{actor or 'unknown'}"
    return f"{LOCK_TYPE}:global"


class MergeLock(Protocol):
    resource_key: str

    async def release(self) -> None: ...


class LockFactory(Protocol):
    async def acquire(self, resource_key: str, timeout: float) -> MergeLock | None: ...


class _InMemoryLock:
    def __init__(self, resource_key: str, lock: asyncio.Lock) -> None:
        self.resource_key = resource_key
        self._lock = lock
        self._released = False

    async def release(self) -> None:
        if not self._released:
            self._released = True
            self._lock.release()
            logger.debug("Released lock %s", self.resource_key)


class InMemoryLockFactory:
    """Process-local named locks."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def is_locked(self, resource_key: str) -> bool:
        lock = self._locks.get(resource_key)
        return lock is not None and lock.locked()

    async def acquire(self, resource_key: str, timeout: float) -> MergeLock | None:
        lock = self._locks.setdefault(resource_key, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except TimeoutError:
            logger.warning("Could not acquire lock %s within %.1fs", resource_key, timeout)
            return None
        logger.debug("Acquired lock %s", resource_key)
        return _InMemoryLock(resource_key, lock)


class _AdvisoryLock:
    def __init__(self, resource_key: str, connection: AsyncConnection) -> None:
        self.resource_key = resource_key
        self._connection = connection

    async def release(self) -> None:
        if self._connection.closed:
            return
        try:
            await self._connection.execute(
                text("SELECT pg_advisory_unlock(hashtext(:key))"), {"key": self.resource_key}
            )
            await self._connection.commit()
        finally:
            # Closing the session releases the advisory lock in any case
            await self._connection.close()
        logger.debug("Released advisory lock %s", self.resource_key)


class AdvisoryLockFactory:
    """PostgreSQL advisory locks, polled until the timeout expires."""

    def __init__(self, engine: AsyncEngine, *, poll_interval: float = 0.1) -> None:
        self._engine = engine
        self._poll_interval = poll_interval

    async def acquire(self, resource_key: str, timeout: float) -> MergeLock | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        connection = await self._engine.connect()
        try:
            while True:
                result = await connection.execute(
                    text("SELECT pg_try_advisory_lock(hashtext(:key))"), {"key": resource_key}
                )
                acquired = bool(result.scalar())
                # The lock is session level; do not keep a transaction open
                await connection.commit()
                if acquired:
                    logger.debug("Acquired advisory lock %s", resource_key)
                    return _AdvisoryLock(resource_key, connection)
                if loop.time() >= deadline:
                    break
                await asyncio.sleep(self._poll_interval)
        except BaseException:
            await connection.close()
            raise

        await connection.close()
        logger.warning("Could not acquire advisory lock %s within %.1fs", resource_key, timeout)
        return None


# Shared by every orchestrator of this process that uses the memory backend
default_memory_locks = InMemoryLockFactory()


def lock_factory_from_settings(config: Settings, engine: AsyncEngine | None = None) -> LockFactory:
    if config.lock_backend == "advisory":
        if engine is None:
            msg = "The advisory lock backend needs an engine"
            raise ValueError(msg)
        return AdvisoryLockFactory(engine)
    return default_memory_locks
