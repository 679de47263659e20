"""Shared pytest fixtures for usermerge tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    insert,
    select,
)
from sqlalchemy.ext.asyncio import create_async_engine

from usermerge.config import Settings
from usermerge.process.events import RecordingEventSink
from usermerge.process.locking import InMemoryLockFactory
from usermerge.process.orchestrator import MergeOrchestrator

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


metadata = MetaData()

Table(
    "user",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("username", String(100), nullable=False),
)
Table(
    "course",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100)),
)
# Reference column found by name, composite unique key with a peer column
Table(
    "enrolment",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("course_id", Integer, nullable=False),
    UniqueConstraint("user_id", "course_id"),
)
# Unique key made of the reference column only
Table(
    "profile",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("bio", String(200)),
    UniqueConstraint("user_id"),
)
# No unique key on the reference column
Table(
    "log",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("action", String(50)),
)
# Reference columns found through foreign keys only
Table(
    "message",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("sender", Integer, ForeignKey("user.id")),
    Column("recipient", Integer, ForeignKey("user.id")),
    Column("body", String(200)),
)
# Two reference columns inside one unique key
Table(
    "contact",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("owner", Integer, ForeignKey("user.id"), nullable=False),
    Column("contact_user", Integer, ForeignKey("user.id"), nullable=False),
    UniqueConstraint("owner", "contact_user"),
)
# No primary key at all
Table(
    "tag_user",
    metadata,
    Column("user_id", Integer, nullable=False),
    Column("tag", String(50), nullable=False),
    UniqueConstraint("user_id", "tag"),
)
# References the user only according to external schema hints
Table(
    "legacy_post",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("poster", Integer, nullable=False),
    Column("discussion", Integer, nullable=False),
)

SEED_ROWS: dict[str, list[dict[str, Any]]] = {
    "user": [
        {"id": 1, "username": "alice"},
        {"id": 2, "username": "alice.old"},
        {"id": 3, "username": "carol"},
        {"id": 5, "username": "dave"},
    ],
    "course": [{"id": 5, "name": "Databases"}, {"id": 6, "name": "Compilers"}],
    "enrolment": [
        {"id": 10, "user_id": 1, "course_id": 5},
        {"id": 11, "user_id": 2, "course_id": 5},
        {"id": 12, "user_id": 2, "course_id": 6},
    ],
    "profile": [
        {"id": 1, "user_id": 1, "bio": "base"},
        {"id": 2, "user_id": 2, "bio": "merge"},
    ],
    "log": [
        {"id": 1, "user_id": 2, "action": "login"},
        {"id": 2, "user_id": 2, "action": "logout"},
        {"id": 3, "user_id": 3, "action": "login"},
    ],
    "message": [
        {"id": 1, "sender": 2, "recipient": 3, "body": "hi"},
        {"id": 2, "sender": 3, "recipient": 2, "body": "hello"},
    ],
    "contact": [
        {"id": 1, "owner": 1, "contact_user": 5},
        {"id": 2, "owner": 2, "contact_user": 5},
        {"id": 3, "owner": 5, "contact_user": 1},
        {"id": 4, "owner": 5, "contact_user": 2},
    ],
    "tag_user": [
        {"user_id": 1, "tag": "a"},
        {"user_id": 2, "tag": "a"},
        {"user_id": 2, "tag": "b"},
    ],
    "legacy_post": [{"id": 1, "poster": 2, "discussion": 7}],
}


# Type aliases for factory fixtures
FetchRows = Callable[[str], Awaitable[list[tuple[Any, ...]]]]
Snapshot = Callable[[], Awaitable[dict[str, list[tuple[Any, ...]]]]]
MakeOrchestrator = Callable[..., MergeOrchestrator]
ReadFileRows = Callable[[Path, str], list[tuple[Any, ...]]]


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "usermerge.sqlite"


@pytest.fixture
def database_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture
async def test_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database with the sample schema and seed rows."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        for name, rows in SEED_ROWS.items():
            await conn.execute(insert(metadata.tables[name]), rows)

    yield engine

    await engine.dispose()


@pytest.fixture
async def connection(test_engine: AsyncEngine) -> AsyncGenerator[AsyncConnection, None]:
    """A connection without an open transaction, as the app hands them out."""
    async with test_engine.connect() as conn:
        yield conn


@pytest.fixture
def tables() -> dict[str, Table]:
    """The sample schema's tables, for building statements in tests."""
    return dict(metadata.tables)


@pytest.fixture
def config(database_url: str) -> Settings:
    return Settings(_env_file=None, database_url=database_url, lock_timeout=0.2)  # type: ignore[call-arg]


@pytest.fixture
def lock_factory() -> InMemoryLockFactory:
    return InMemoryLockFactory()


@pytest.fixture
def sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def fetch_rows(test_engine: AsyncEngine) -> FetchRows:
    """Factory fixture returning a table's rows, sorted, read on a fresh connection."""

    async def _fetch(name: str) -> list[tuple[Any, ...]]:
        table = metadata.tables[name]
        async with test_engine.connect() as conn:
            result = await conn.execute(select(table))
            return sorted(tuple(row) for row in result.all())

    return _fetch


@pytest.fixture
def snapshot(fetch_rows: FetchRows) -> Snapshot:
    """Factory fixture returning the content of every table."""

    async def _snapshot() -> dict[str, list[tuple[Any, ...]]]:
        return {name: await fetch_rows(name) for name in metadata.tables}

    return _snapshot


@pytest.fixture
def make_orchestrator(
    connection: AsyncConnection,
    config: Settings,
    sink: RecordingEventSink,
    lock_factory: InMemoryLockFactory,
) -> MakeOrchestrator:
    """Factory fixture for MergeOrchestrator instances on the test connection."""

    def _make(**kwargs: Any) -> MergeOrchestrator:
        kwargs.setdefault("config", config)
        kwargs.setdefault("sink", sink)
        kwargs.setdefault("lock_factory", lock_factory)
        conn = kwargs.pop("connection", connection)
        return MergeOrchestrator(conn, **kwargs)

    return _make


@pytest.fixture
def sqlite_file(tmp_path: Path) -> Path:
    """A seeded database file built without an event loop, for the CLI's own asyncio.run()."""
    path = tmp_path / "cli.sqlite"
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        metadata.create_all(conn)
        for name, rows in SEED_ROWS.items():
            conn.execute(insert(metadata.tables[name]), rows)
    engine.dispose()
    return path


@pytest.fixture
def read_file_rows() -> ReadFileRows:
    """Factory fixture returning a table's rows from a database file, sorted."""

    def _read(path: Path, name: str) -> list[tuple[Any, ...]]:
        engine = create_engine(f"sqlite:///{path}")
        with engine.connect() as conn:
            rows = sorted(tuple(row) for row in conn.execute(select(metadata.tables[name])))
        engine.dispose()
        return rows

    return _read
