"""Database layer for Mnemos.

This module handles database connections and session management for the
embedding job store.

Public API:
    get_engine: Create an AsyncEngine from DatabaseConfig.
    get_session_factory: Create an async_sessionmaker from an engine.
    Base: SQLAlchemy declarative base for all models.
"""

from mnemos.database.connection import get_engine, get_session_factory
from mnemos.database.models import Base, EmbedJob, JobStatus

__all__ = [
    "get_engine",
    "get_session_factory",
    "Base",
    "EmbedJob",
    "JobStatus",
]
