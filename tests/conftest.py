"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from dungeon.database import create_engine_for
from dungeon.db.base import Base
from dungeon.db.models import User
from dungeon.ledger.xp_service import ensure_user
from dungeon.policy.settings import DEFAULT_SETTINGS, UserSettings

TEST_USER_ID = "user-test-1"
TEST_TIMEZONE = "America/Chicago"
# 2026-03-10 18:00 UTC is 13:00 in Chicago (CDT).
NOW = datetime(2026, 3, 10, 18, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> UserSettings:
    return DEFAULT_SETTINGS


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database per test, schema created from the ORM metadata."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'dungeon.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def user(db_session: AsyncSession) -> User:
    """A committed user aggregate with default settings."""
    user = await ensure_user(db_session, TEST_USER_ID, timezone_name=TEST_TIMEZONE)
    await db_session.commit()
    return user
