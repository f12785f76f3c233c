"""Pytest fixtures for integration tests.

Provides an in-memory SQLite database (aiosqlite) for exercising the job
store's SQL. Production runs on PostgreSQL; the lease statement's
FOR UPDATE SKIP LOCKED clause is simply not rendered on SQLite, while every
other transition runs the same statements.
"""

from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from mnemos.database.models import Base
from mnemos.jobs.store import JobStore

START_MS = 1_700_000_000_000


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an in-memory SQLite async engine with the schema applied.

    Yields:
        AsyncEngine sharing one connection so all sessions see the same database.
    """
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def job_store(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock) -> JobStore:
    """JobStore driven by the fake clock."""
    return JobStore(session_factory, clock=clock)
