from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.engine import async_session


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session for one unit of work; commit on success, roll back on error."""
    async with (factory or async_session)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
