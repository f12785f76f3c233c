"""SQLAlchemy ORM models for Mnemos.

All models use SQLAlchemy 2.0 declarative style with Mapped[] type annotations.
"""

from mnemos.database.models.base import Base
from mnemos.database.models.job import TERMINAL_STATUSES, EmbedJob, JobStatus

__all__ = [
    "Base",
    "EmbedJob",
    "JobStatus",
    "TERMINAL_STATUSES",
]
