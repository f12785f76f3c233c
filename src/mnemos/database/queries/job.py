"""Embedding job query functions.

Provides the atomic state transitions of the embedding job queue. Every
transition takes an active session, runs exactly one transaction, receives
the current time in epoch milliseconds where it stamps one, and relies on
conditional UPDATE statements (never a read-then-write pair) so that
concurrent workers cannot both claim or both finish the same job.

Ownership rule: complete, fail, release and heartbeat only affect rows whose
status is ``processing`` and whose ``lock_owner`` matches the caller. A
worker whose lease was recovered by someone else therefore gets a zero
result instead of overwriting the new owner's state.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mnemos.database.models.job import TERMINAL_STATUSES, EmbedJob, JobStatus

logger = structlog.get_logger(__name__)

STALE_LEASE_ERROR = "lease expired"


def _next_status_after_failure() -> Any:
    """CASE expression choosing pending or failed for a failed attempt."""
    return case(
        (EmbedJob.attempts + 1 >= EmbedJob.max_attempts, JobStatus.failed.value),
        else_=JobStatus.pending.value,
    )


def _owned_processing(job_ids: list[UUID], worker_id: str) -> list[Any]:
    return [
        EmbedJob.id.in_(job_ids),
        EmbedJob.status == JobStatus.processing.value,
        EmbedJob.lock_owner == worker_id,
    ]


async def insert_job(
    session: AsyncSession,
    entity_uid: str,
    model: str,
    version: str,
    priority: int,
    max_attempts: int,
    now: int,
) -> UUID | None:
    """Insert a pending job unless its idempotency key already exists.

    Args:
        session: Active async database session.
        entity_uid: Entity name in the graph store.
        model: Embedding model name.
        version: Entity version string.
        priority: Lease priority (higher first).
        max_attempts: Attempts before the job is marked failed.
        now: Current time in epoch ms.

    Returns:
        UUID of the new job, or None if a job with the same
        (entity_uid, model, version) already exists in any status.
    """
    job = EmbedJob(
        entity_uid=entity_uid,
        model=model,
        version=version,
        status=JobStatus.pending.value,
        priority=priority,
        attempts=0,
        max_attempts=max_attempts,
        created_at=now,
    )

    try:
        async with session.begin():
            session.add(job)
            await session.flush()
    except IntegrityError:
        logger.debug(
            "embed_job_duplicate",
            entity_uid=entity_uid,
            model=model,
            version=version,
        )
        return None

    logger.info(
        "embed_job_enqueued",
        job_id=str(job.id),
        entity_uid=entity_uid,
        model=model,
        version=version,
        priority=priority,
    )
    return job.id


async def lease_pending_jobs(
    session: AsyncSession,
    batch_size: int,
    worker_id: str,
    lease_duration_ms: int,
    now: int,
) -> list[EmbedJob]:
    """Atomically claim up to batch_size pending jobs for a worker.

    The claim is a single UPDATE whose WHERE clause selects the candidate
    ids (highest priority, oldest first) and re-checks ``status='pending'``.
    On PostgreSQL the candidate sub-select uses FOR UPDATE SKIP LOCKED so
    concurrent workers pass over each other's rows instead of blocking.

    Args:
        session: Active async database session.
        batch_size: Maximum number of jobs to claim.
        worker_id: Lease owner recorded on the claimed rows.
        lease_duration_ms: Lease length in milliseconds.
        now: Current time in epoch ms.

    Returns:
        Claimed jobs ordered by priority descending, then creation ascending.
    """
    candidates = (
        select(EmbedJob.id)
        .where(EmbedJob.status == JobStatus.pending.value)
        .order_by(EmbedJob.priority.desc(), EmbedJob.created_at.asc())
        .limit(batch_size)
        .with_for_update(skip_locked=True)
    )

    async with session.begin():
        stmt = (
            update(EmbedJob)
            .where(
                EmbedJob.id.in_(candidates),
                EmbedJob.status == JobStatus.pending.value,
            )
            .values(
                status=JobStatus.processing.value,
                lock_owner=worker_id,
                lock_until=now + lease_duration_ms,
            )
            .returning(EmbedJob.id)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        leased_ids = [row[0] for row in result.all()]

        if not leased_ids:
            return []

        rows = await session.execute(
            select(EmbedJob)
            .where(EmbedJob.id.in_(leased_ids))
            .order_by(EmbedJob.priority.desc(), EmbedJob.created_at.asc())
        )
        jobs = list(rows.scalars().all())

    logger.info(
        "embed_jobs_leased",
        worker_id=worker_id,
        count=len(jobs),
        lease_until=now + lease_duration_ms,
    )
    return jobs


async def extend_leases(
    session: AsyncSession,
    job_ids: list[UUID],
    worker_id: str,
    lease_duration_ms: int,
    now: int,
) -> int:
    """Push lock_until forward for jobs the worker still owns.

    Returns:
        Number of leases extended.
    """
    async with session.begin():
        stmt = (
            update(EmbedJob)
            .where(*_owned_processing(job_ids, worker_id))
            .values(lock_until=now + lease_duration_ms)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        count: int = result.rowcount  # type: ignore[attr-defined]

    logger.debug("embed_job_leases_extended", worker_id=worker_id, count=count)
    return count


async def mark_completed(
    session: AsyncSession,
    job_id: UUID,
    worker_id: str,
    now: int,
) -> bool:
    """Mark an owned processing job as completed.

    Returns:
        True if the job transitioned, False if the worker no longer owns it.
    """
    async with session.begin():
        stmt = (
            update(EmbedJob)
            .where(*_owned_processing([job_id], worker_id))
            .values(
                status=JobStatus.completed.value,
                processed_at=now,
                lock_owner=None,
                lock_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        updated = result.rowcount > 0  # type: ignore[attr-defined]

    if updated:
        logger.info("embed_job_completed", job_id=str(job_id), worker_id=worker_id)
    else:
        logger.warning(
            "embed_job_complete_rejected", job_id=str(job_id), worker_id=worker_id
        )
    return updated


async def mark_failed(
    session: AsyncSession,
    job_id: UUID,
    worker_id: str,
    error_message: str,
    now: int,
) -> bool:
    """Record a failed attempt on an owned processing job.

    The attempt counter is incremented and the job returns to ``pending``,
    or becomes ``failed`` once the incremented count reaches max_attempts.
    Both outcomes are decided inside a single UPDATE.

    Returns:
        True if the job transitioned, False if the worker no longer owns it.
    """
    async with session.begin():
        stmt = (
            update(EmbedJob)
            .where(*_owned_processing([job_id], worker_id))
            .values(
                status=_next_status_after_failure(),
                attempts=EmbedJob.attempts + 1,
                error=error_message,
                processed_at=now,
                lock_owner=None,
                lock_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        updated = result.rowcount > 0  # type: ignore[attr-defined]

    if updated:
        logger.warning(
            "embed_job_attempt_failed",
            job_id=str(job_id),
            worker_id=worker_id,
            error=error_message,
        )
    else:
        logger.warning(
            "embed_job_fail_rejected", job_id=str(job_id), worker_id=worker_id
        )
    return updated


async def release_leases(
    session: AsyncSession,
    job_ids: list[UUID],
    worker_id: str,
) -> int:
    """Return owned processing jobs to pending without consuming an attempt.

    Returns:
        Number of jobs released.
    """
    async with session.begin():
        stmt = (
            update(EmbedJob)
            .where(*_owned_processing(job_ids, worker_id))
            .values(
                status=JobStatus.pending.value,
                lock_owner=None,
                lock_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        count: int = result.rowcount  # type: ignore[attr-defined]

    logger.info("embed_jobs_released", worker_id=worker_id, count=count)
    return count


async def recover_expired_leases(session: AsyncSession, now: int) -> int:
    """Reclaim processing jobs whose lease has expired.

    An expired lease counts as a failed attempt: attempts is incremented and
    the same pending-or-failed rule as mark_failed applies. Running this
    twice at the same instant affects nothing the second time.

    Returns:
        Number of jobs reclaimed.
    """
    async with session.begin():
        stmt = (
            update(EmbedJob)
            .where(
                EmbedJob.status == JobStatus.processing.value,
                EmbedJob.lock_until.is_not(None),
                EmbedJob.lock_until < now,
            )
            .values(
                status=_next_status_after_failure(),
                attempts=EmbedJob.attempts + 1,
                error=STALE_LEASE_ERROR,
                processed_at=now,
                lock_owner=None,
                lock_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        count: int = result.rowcount  # type: ignore[attr-defined]

    if count:
        logger.warning("embed_job_leases_recovered", count=count)
    return count


async def reset_failed_jobs(session: AsyncSession) -> int:
    """Return every failed job to pending with a cleared attempt history.

    Returns:
        Number of jobs reset.
    """
    async with session.begin():
        stmt = (
            update(EmbedJob)
            .where(EmbedJob.status == JobStatus.failed.value)
            .values(
                status=JobStatus.pending.value,
                attempts=0,
                error=None,
                processed_at=None,
                lock_owner=None,
                lock_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        count: int = result.rowcount  # type: ignore[attr-defined]

    logger.info("embed_jobs_retried", count=count)
    return count


async def delete_terminal_jobs(session: AsyncSession, cutoff: int) -> int:
    """Delete completed and failed jobs processed before cutoff.

    Pending and processing rows are never deleted.

    Returns:
        Number of jobs deleted.
    """
    async with session.begin():
        stmt = (
            delete(EmbedJob)
            .where(
                EmbedJob.status.in_(TERMINAL_STATUSES),
                EmbedJob.processed_at.is_not(None),
                EmbedJob.processed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        count: int = result.rowcount  # type: ignore[attr-defined]

    logger.info("embed_jobs_cleaned_up", count=count, cutoff=cutoff)
    return count


async def count_jobs_by_status(session: AsyncSession) -> dict[str, int]:
    """Count jobs per status.

    Returns:
        Dictionary with pending, processing, completed, failed and total.
    """
    stmt = select(
        EmbedJob.status,
        func.count(EmbedJob.id).label("count"),
    ).group_by(EmbedJob.status)

    result = await session.execute(stmt)

    stats: dict[str, int] = {status.value: 0 for status in JobStatus}
    stats["total"] = 0
    for row in result.all():
        if row.status in stats:
            stats[row.status] = row.count
        stats["total"] += row.count

    return stats


async def get_job(session: AsyncSession, job_id: UUID) -> EmbedJob | None:
    """Get a single job by ID."""
    return await session.get(EmbedJob, job_id)
