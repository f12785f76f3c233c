"""Embedding job model.

Defines the EmbedJob table and JobStatus enum. One row exists per
(entity, model, version) embedding request; the unique constraint on that
triple is what makes enqueueing idempotent.

Timestamps are stored as epoch milliseconds supplied by the job store's
clock rather than database server time, so lease arithmetic behaves the same
on PostgreSQL and SQLite.
"""

from __future__ import annotations

import enum
import uuid

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from mnemos.database.models.base import Base


class JobStatus(str, enum.Enum):
    """Lifecycle states of an embedding job.

    States:
        pending: Waiting to be leased (new, released, or retried).
        processing: Leased by a worker until lock_until.
        completed: Embedding stored; terminal.
        failed: Attempts exhausted; terminal until an operator retry.
    """

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = (JobStatus.completed.value, JobStatus.failed.value)


class EmbedJob(Base):
    """A durable request to generate an embedding for one entity version.

    Attributes:
        id: UUID primary key assigned at creation.
        entity_uid: Name of the entity in the graph store.
        model: Embedding model name.
        version: Entity version the embedding is generated for.
        status: Current JobStatus value.
        priority: Higher values are leased first.
        lock_owner: Worker holding the lease, or None.
        lock_until: Lease expiry in epoch ms, or None.
        attempts: Failed or expired attempts so far.
        max_attempts: Attempts after which the job is marked failed.
        error: Last failure message.
        created_at: Creation time in epoch ms.
        processed_at: Time of the last terminal or failure transition.
    """

    __tablename__ = "embed_jobs"
    __table_args__ = (
        UniqueConstraint(
            "entity_uid", "model", "version", name="uq_embed_jobs_entity_model_version"
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_embed_jobs_status",
        ),
        CheckConstraint(
            "(lock_owner IS NULL) = (lock_until IS NULL)",
            name="ck_embed_jobs_lock_pair",
        ),
        Index("idx_embed_jobs_status_priority", "status", "priority", "created_at"),
        Index("idx_embed_jobs_lock_until", "lock_until"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    entity_uid: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        Text,
        default=JobStatus.pending.value,
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    lock_owner: Mapped[str | None] = mapped_column(Text, nullable=True)
    lock_until: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    def __repr__(self) -> str:
        return (
            f"EmbedJob(id={self.id}, entity_uid={self.entity_uid!r}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )
