"""Engine and session wiring for the embedding job database.

Job rows live in PostgreSQL and are reached through asyncpg. Every worker
process owns one pooled engine; the job store opens a short-lived session
per queue transition from the factory returned by ``get_session_factory``.

SQLite URLs (``sqlite+aiosqlite://``) are accepted for local runs and the
test suite. SQLite engines do not take the queue pool sizing, so only the
echo flag is applied to them.

Example:
    >>> engine = get_engine(DatabaseConfig(url="postgresql+asyncpg://db/jobs"))
    >>> store = JobStore(get_session_factory(engine))
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from mnemos.config import DatabaseConfig

logger = structlog.get_logger(__name__)


def engine_options(config: DatabaseConfig) -> dict[str, Any]:
    """Keyword arguments for create_async_engine for the configured backend.

    Pooled backends get the configured pool size and overflow, and every
    connection is pinged on checkout.
    """
    options: dict[str, Any] = {"echo": config.echo}
    if make_url(config.url).get_backend_name() == "sqlite":
        return options

    options.update(
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_pre_ping=True,
    )
    return options


def get_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create the job database engine described by config."""
    options = engine_options(config)
    engine = create_async_engine(config.url, **options)
    logger.debug(
        "job_database_engine_created",
        url=engine.url.render_as_string(hide_password=True),
        pooled="pool_size" in options,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Bind a session factory for job store transactions to engine.

    Job rows returned by a lease stay readable once its transaction has
    committed (expire_on_commit is off), so no lazy load is attempted
    outside the session.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
