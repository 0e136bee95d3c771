from src.database.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from src.database.engine import (
    async_session,
    build_engine,
    build_sessionmaker,
    create_schema,
    engine,
)
from src.database.session import session_scope

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "async_session",
    "build_engine",
    "build_sessionmaker",
    "create_schema",
    "engine",
    "session_scope",
]
