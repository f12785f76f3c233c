"""Durable embedding job store.

The JobStore is the only component that mutates persisted job state. Each
operation opens its own session from the injected session factory and runs
one transaction through the functions in ``mnemos.database.queries.job``.

Time comes from an injectable clock returning epoch milliseconds, so lease
expiry and retention can be driven deterministically in tests.

Example:
    >>> store = JobStore(session_factory)
    >>> job_id = await store.enqueue_job("Alice", "text-embedding-3-small", "1")
    >>> jobs = await store.lease_jobs(10, "worker-1", lease_duration_ms=300_000)
    >>> await store.complete_job(jobs[0].id, "worker-1")
"""

from __future__ import annotations

import time
from typing import Callable
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from mnemos.database.models.job import EmbedJob
from mnemos.database.queries import job as job_queries

SessionFactory = Callable[[], AsyncSession]
Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class QueueStatus(BaseModel):
    """Job counts per status.

    Attributes:
        total: All jobs in the store
        pending: Jobs waiting to be leased
        processing: Jobs currently leased
        completed: Jobs whose embedding was stored
        failed: Jobs that exhausted their attempts
    """

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class JobStore:
    """Lease-based persistent queue of embedding jobs.

    Attributes:
        session_factory: Callable that produces async database sessions.
    """

    def __init__(self, session_factory: SessionFactory, clock: Clock = now_ms) -> None:
        """Initialize the job store.

        Args:
            session_factory: Callable returning new AsyncSession instances.
            clock: Callable returning the current time in epoch milliseconds.
        """
        self.session_factory = session_factory
        self._clock = clock

    async def enqueue_job(
        self,
        entity_uid: str,
        model: str,
        version: str,
        priority: int = 1,
        max_attempts: int = 3,
    ) -> UUID | None:
        """Create a pending job unless one exists for the same key.

        Args:
            entity_uid: Entity name in the graph store
            model: Embedding model name
            version: Entity version string
            priority: Lease priority (higher first)
            max_attempts: Attempts before the job is marked failed

        Returns:
            The new job's UUID, or None if the (entity_uid, model, version)
            key already exists in any status.

        Raises:
            ValueError: If max_attempts is less than 1
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        async with self.session_factory() as session:
            return await job_queries.insert_job(
                session,
                entity_uid=entity_uid,
                model=model,
                version=version,
                priority=priority,
                max_attempts=max_attempts,
                now=self._clock(),
            )

    async def lease_jobs(
        self,
        batch_size: int,
        worker_id: str,
        lease_duration_ms: int,
    ) -> list[EmbedJob]:
        """Claim up to batch_size pending jobs for worker_id.

        Returns:
            Leased jobs, highest priority first, then oldest first.

        Raises:
            ValueError: If batch_size < 1 or lease_duration_ms <= 0
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if lease_duration_ms <= 0:
            raise ValueError(f"lease_duration_ms must be > 0, got {lease_duration_ms}")

        async with self.session_factory() as session:
            return await job_queries.lease_pending_jobs(
                session,
                batch_size=batch_size,
                worker_id=worker_id,
                lease_duration_ms=lease_duration_ms,
                now=self._clock(),
            )

    async def heartbeat_jobs(
        self,
        job_ids: list[UUID],
        worker_id: str,
        lease_duration_ms: int,
    ) -> int:
        """Extend the leases of jobs still owned by worker_id.

        Returns:
            Number of leases extended (0 for an empty id list).
        """
        if not job_ids:
            return 0
        if lease_duration_ms <= 0:
            raise ValueError(f"lease_duration_ms must be > 0, got {lease_duration_ms}")

        async with self.session_factory() as session:
            return await job_queries.extend_leases(
                session,
                job_ids=list(job_ids),
                worker_id=worker_id,
                lease_duration_ms=lease_duration_ms,
                now=self._clock(),
            )

    async def complete_job(self, job_id: UUID, worker_id: str) -> bool:
        """Mark a leased job completed.

        Returns:
            False if the job is not processing or not owned by worker_id.
        """
        async with self.session_factory() as session:
            return await job_queries.mark_completed(
                session, job_id=job_id, worker_id=worker_id, now=self._clock()
            )

    async def fail_job(self, job_id: UUID, worker_id: str, error_message: str) -> bool:
        """Record a failed attempt on a leased job.

        The job returns to pending, or becomes failed once attempts reaches
        max_attempts.

        Returns:
            False if the job is not processing or not owned by worker_id.
        """
        async with self.session_factory() as session:
            return await job_queries.mark_failed(
                session,
                job_id=job_id,
                worker_id=worker_id,
                error_message=error_message,
                now=self._clock(),
            )

    async def release_jobs(self, job_ids: list[UUID], worker_id: str) -> int:
        """Return leased jobs to pending without consuming an attempt."""
        if not job_ids:
            return 0

        async with self.session_factory() as session:
            return await job_queries.release_leases(
                session, job_ids=list(job_ids), worker_id=worker_id
            )

    async def recover_stale_jobs(self) -> int:
        """Reclaim jobs whose lease expired; each counts as a failed attempt."""
        async with self.session_factory() as session:
            return await job_queries.recover_expired_leases(session, now=self._clock())

    async def retry_failed_jobs(self) -> int:
        """Move every failed job back to pending with attempts cleared."""
        async with self.session_factory() as session:
            return await job_queries.reset_failed_jobs(session)

    async def cleanup_jobs(self, retention_ms: int) -> int:
        """Delete completed and failed jobs older than the retention window.

        Args:
            retention_ms: Age in milliseconds beyond which terminal jobs are deleted

        Returns:
            Number of jobs deleted.

        Raises:
            ValueError: If retention_ms is negative
        """
        if retention_ms < 0:
            raise ValueError(f"retention_ms must be >= 0, got {retention_ms}")

        async with self.session_factory() as session:
            return await job_queries.delete_terminal_jobs(
                session, cutoff=self._clock() - retention_ms
            )

    async def get_queue_status(self) -> QueueStatus:
        """Count jobs per status."""
        async with self.session_factory() as session:
            counts = await job_queries.count_jobs_by_status(session)
        return QueueStatus(**counts)

    async def get_job(self, job_id: UUID) -> EmbedJob | None:
        """Read a single job for diagnostics."""
        async with self.session_factory() as session:
            return await job_queries.get_job(session, job_id)
