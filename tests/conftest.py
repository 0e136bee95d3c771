"""Pytest fixtures for fulfillment integration tests.

Each test gets its own SQLite file database so that separate sessions use
separate connections, which is what the claim and finalize race tests need.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.database.engine import build_engine, build_sessionmaker, create_schema
from src.modules.commission.policy import CommissionPolicyTable, default_policy_table
from src.modules.ledger.service import OrderLedger


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'fulfillment.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(db_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def policy_table() -> CommissionPolicyTable:
    return default_policy_table()


@pytest.fixture
def ledger(db_session: AsyncSession, policy_table: CommissionPolicyTable) -> OrderLedger:
    return OrderLedger(db_session, policy_table=policy_table)
