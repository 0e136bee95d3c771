from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.config import settings
from src.database.base import Base


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if make_url(database_url).get_backend_name() == "sqlite":
        # Writers queue on the file lock instead of failing fast
        return create_async_engine(database_url, echo=echo, connect_args={"timeout": 30})
    return create_async_engine(
        database_url,
        pool_size=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        max_overflow=5,
        echo=echo,
    )


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def create_schema(bind: AsyncEngine) -> None:
    """Create all tables known to the metadata (tests and local bootstrap)."""
    import src.models  # noqa: F401  populate metadata

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = build_engine(settings.database_url, echo=settings.database_echo)

async_session = build_sessionmaker(engine)
