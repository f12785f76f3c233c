"""Embedding job queue table.

Creates the embed_jobs table backing the lease-based embedding job queue.
The unique constraint on (entity_uid, model, version) makes enqueueing
idempotent; the composite status/priority index serves lease selection and
the lock_until index serves stale-lease recovery.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "embed_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("entity_uid", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("version", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("lock_owner", sa.Text(), nullable=True),
        sa.Column("lock_until", sa.BigInteger(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("processed_at", sa.BigInteger(), nullable=True),
        sa.UniqueConstraint(
            "entity_uid", "model", "version", name="uq_embed_jobs_entity_model_version"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_embed_jobs_status",
        ),
        sa.CheckConstraint(
            "(lock_owner IS NULL) = (lock_until IS NULL)",
            name="ck_embed_jobs_lock_pair",
        ),
    )

    op.create_index(
        "idx_embed_jobs_status_priority",
        "embed_jobs",
        ["status", "priority", "created_at"],
    )
    op.create_index("idx_embed_jobs_lock_until", "embed_jobs", ["lock_until"])


def downgrade() -> None:
    op.drop_index("idx_embed_jobs_lock_until", table_name="embed_jobs")
    op.drop_index("idx_embed_jobs_status_priority", table_name="embed_jobs")
    op.drop_table("embed_jobs")
