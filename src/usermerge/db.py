"""Database engine and connection management."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from usermerge.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
)


async def get_connection() -> AsyncGenerator[AsyncConnection, None]:
    """Dependency for getting an async database connection.

    The connection is handed out without an open transaction; the merge
    orchestrator decides how to begin, commit or roll back.
    """
    async with engine.connect() as connection:
        yield connection
