"""Worker-side orchestration of embedding jobs.

The EmbeddingJobManager turns entity changes into durable jobs, drives leased
batches through the embedding provider under the rate limiter, and runs the
background loops that keep the queue healthy:

- processing: lease and process a batch every process_interval_seconds
- recovery: reclaim jobs whose lease expired (disabled when the interval is 0)
- cleanup: delete terminal jobs older than the retention window

Processing a batch
------------------
Jobs are handled one at a time in lease order. Before each provider call the
manager reserves rate-limiter capacity, waiting at most
capacity_wait_seconds. If capacity cannot be obtained the pass stops and
every job it has not yet attempted is released back to pending without
consuming an attempt. While the pass runs, a heartbeat task extends the
leases of unfinished jobs so a slow batch is not mistaken for a crashed
worker.

Example:
    >>> manager = EmbeddingJobManager(
    ...     storage=storage,
    ...     provider=provider,
    ...     job_store=JobStore(session_factory),
    ...     rate_limiter=RateLimiter(config.rate_limit),
    ...     config=config.jobs,
    ...     retry_policy=config.retry,
    ... )
    >>> await manager.schedule_entity_embedding("Alice")
    >>> results = await manager.process_jobs()
    >>> await manager.start()
"""

from __future__ import annotations

import asyncio
import math
import os
import socket
import uuid
from collections import deque
from enum import Enum
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from mnemos.config import JobsConfig, RetryPolicy
from mnemos.database.models.job import EmbedJob
from mnemos.embeddings.cache import EmbeddingCache
from mnemos.embeddings.types import (
    EmbeddingProvider,
    Entity,
    EntityEmbedding,
    EntityStorage,
)
from mnemos.errors import (
    EntityNotFoundError,
    RateLimitExceededError,
    SchedulingError,
    describe_error,
)
from mnemos.jobs.rate_limiter import RateLimiter, RateLimitStatus
from mnemos.jobs.runner import RecurringTaskRunner
from mnemos.jobs.store import Clock, JobStore, QueueStatus, now_ms
from mnemos.logging import bind_job_context, clear_job_context, set_correlation_id

logger = structlog.get_logger(__name__)

MIN_RETENTION_DAYS = 7
MAX_RETENTION_DAYS = 30
MS_PER_DAY = 24 * 60 * 60 * 1000


class JobProcessResults(BaseModel):
    """Outcome counts of one processing pass.

    Attributes:
        processed: Jobs attempted in this pass
        successful: Attempted jobs whose embedding was stored
        failed: Attempted jobs recorded as failed attempts
        released: Leased jobs handed back unattempted
    """

    processed: int = 0
    successful: int = 0
    failed: int = 0
    released: int = 0


class HealthState(str, Enum):
    """Aggregate health of the job subsystem.

    Values:
        HEALTHY: Loops running, no recent failures, queue within bounds
        DEGRADED: Recent failures or a backlog, but still making progress
        CRITICAL: A loop halted or failures reached the critical threshold
    """

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class LoopStatus(BaseModel):
    """State of one background loop."""

    name: str
    running: bool
    halted: bool
    consecutive_failures: int
    last_error: str | None = None


class HealthStatus(BaseModel):
    """Health snapshot returned by get_health_status().

    Attributes:
        status: Aggregate HealthState
        worker_id: Lease owner identity of this manager
        consecutive_failures: Highest consecutive failure count across
            job processing and the background loops
        success_rate: Fraction of successful jobs among recent outcomes
            (1.0 when nothing has been processed yet)
        last_error: Most recent failure message, if any
        reasons: Human-readable causes of a non-healthy status
        loops: Per-loop state
        queue: Queue counts observed at the end of the last pass
        rate_limiter: Current rate limiter usage
    """

    status: HealthState
    worker_id: str
    consecutive_failures: int
    success_rate: float
    last_error: str | None = None
    reasons: list[str] = Field(default_factory=list)
    loops: list[LoopStatus] = Field(default_factory=list)
    queue: QueueStatus | None = None
    rate_limiter: RateLimitStatus


def default_worker_id() -> str:
    """Worker identity unique per process: host, pid and a random suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def prepare_entity_text(entity: Entity) -> str:
    """Render an entity as the text sent to the embedding provider.

    Format::

        Name: <name>
        Type: <entity_type>
        Observations:
        - <observation>
        ...

    An entity without observations gets a single "  (No observations)" line.
    """
    lines = [f"Name: {entity.name}", f"Type: {entity.entity_type}", "Observations:"]
    if entity.observations:
        lines.extend(f"- {observation}" for observation in entity.observations)
    else:
        lines.append("  (No observations)")
    return "\n".join(lines)


def retention_window_ms(retention_days: int) -> int:
    """Convert a retention window in days to milliseconds.

    Raises:
        ValueError: If retention_days is outside 7-30
    """
    if not MIN_RETENTION_DAYS <= retention_days <= MAX_RETENTION_DAYS:
        raise ValueError(
            f"retention_days must be between {MIN_RETENTION_DAYS} and "
            f"{MAX_RETENTION_DAYS}, got {retention_days}"
        )
    return retention_days * MS_PER_DAY


def estimate_tokens(text: str) -> int:
    """Rough token estimate used when no per-job estimate is configured."""
    return math.ceil(len(text) / 4)


class EmbeddingJobManager:
    """Schedules, processes and maintains embedding jobs for one worker.

    Attributes:
        storage: Graph storage collaborator
        provider: Embedding provider
        job_store: Durable job queue
        rate_limiter: Provider rate limiter
        config: Job processing configuration
        retry_policy: Backoff policy for the background loops
        worker_id: Lease owner identity
        cache: Optional embedding cache keyed by prepared text
    """

    def __init__(
        self,
        storage: EntityStorage,
        provider: EmbeddingProvider,
        job_store: JobStore,
        rate_limiter: RateLimiter,
        config: JobsConfig,
        retry_policy: RetryPolicy,
        worker_id: str | None = None,
        cache: EmbeddingCache | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.storage = storage
        self.provider = provider
        self.job_store = job_store
        self.rate_limiter = rate_limiter
        self.config = config
        self.retry_policy = retry_policy
        self.worker_id = worker_id or default_worker_id()
        self.cache = cache
        self._clock = clock

        self._runners: list[RecurringTaskRunner] = []
        self._outcomes: deque[bool] = deque(maxlen=config.health_window)
        self._consecutive_job_failures = 0
        self._last_error: str | None = None
        self._last_queue_status: QueueStatus | None = None
        self._logger = logger.bind(worker_id=self.worker_id)

        self._logger.info(
            "embedding_job_manager_initialized",
            model=provider.model_name,
            batch_size=config.batch_size,
            lease_duration_seconds=config.lease_duration_seconds,
            cache_enabled=cache is not None,
        )

    @property
    def lease_duration_ms(self) -> int:
        return int(self.config.lease_duration_seconds * 1000)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _enqueue_for(self, entity: Entity, priority: int) -> UUID | None:
        version = str(entity.version or 1)
        try:
            job_id = await self.job_store.enqueue_job(
                entity.name,
                self.provider.model_name,
                version,
                priority=priority,
                max_attempts=self.config.max_attempts,
            )
        except Exception as e:
            raise SchedulingError(
                f"Failed to schedule embedding for {entity.name}: {e}"
            ) from e

        if job_id is None:
            self._logger.debug(
                "embedding_already_scheduled", entity_name=entity.name, version=version
            )
        return job_id

    async def schedule_entity_embedding(
        self, entity_name: str, priority: int = 1
    ) -> UUID | None:
        """Schedule embedding generation for an entity's current version.

        Args:
            entity_name: Entity to embed
            priority: Lease priority (higher first)

        Returns:
            The new job's UUID, or None if a job for this entity, model and
            version already exists.

        Raises:
            EntityNotFoundError: If the entity does not exist
            SchedulingError: If the job store rejects the enqueue
        """
        entity = await self.storage.get_entity(entity_name)
        if entity is None:
            raise EntityNotFoundError(entity_name)

        return await self._enqueue_for(entity, priority)

    async def schedule_missing_embeddings(self, limit: int = 100) -> int:
        """Schedule jobs for entities that have no stored embedding.

        Args:
            limit: Maximum number of entities to consider

        Returns:
            Number of new jobs created.
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        entities = await self.storage.get_entities_without_embeddings(limit)
        scheduled = 0
        for entity in entities:
            if await self._enqueue_for(entity, priority=1) is not None:
                scheduled += 1

        self._logger.info(
            "missing_embeddings_scheduled", candidates=len(entities), scheduled=scheduled
        )
        return scheduled

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_jobs(self, batch_size: int | None = None) -> JobProcessResults:
        """Lease and process one batch of jobs.

        Args:
            batch_size: Jobs to lease (defaults to config.batch_size)

        Returns:
            JobProcessResults for this pass.
        """
        size = batch_size if batch_size is not None else self.config.batch_size
        set_correlation_id(uuid.uuid4().hex)
        results = JobProcessResults()

        try:
            jobs = await self.job_store.lease_jobs(size, self.worker_id, self.lease_duration_ms)
            if not jobs:
                # Other workers may have drained the queue; keep health current
                self._last_queue_status = await self.job_store.get_queue_status()
                self._logger.debug(
                    "no_embedding_jobs_leased", pending=self._last_queue_status.pending
                )
                return results

            unfinished = {job.id for job in jobs}
            attempted: set[UUID] = set()
            heartbeat = asyncio.create_task(self._heartbeat_loop(unfinished))

            try:
                for job in jobs:
                    try:
                        await self.rate_limiter.wait_for_capacity(
                            self.config.estimated_tokens_per_job,
                            max_wait_seconds=self.config.capacity_wait_seconds,
                        )
                    except RateLimitExceededError as e:
                        self._logger.warning(
                            "processing_pass_rate_limited",
                            error=str(e),
                            retry_after_seconds=e.retry_after_seconds,
                            remaining=len(jobs) - len(attempted),
                        )
                        break

                    attempted.add(job.id)
                    succeeded = await self._process_job(job)
                    unfinished.discard(job.id)

                    results.processed += 1
                    if succeeded:
                        results.successful += 1
                    else:
                        results.failed += 1
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass

                unattempted = [job.id for job in jobs if job.id not in attempted]
                if unattempted:
                    results.released = await self._release_unattempted(unattempted)

            self._last_queue_status = await self.job_store.get_queue_status()
            self._logger.info(
                "processing_pass_completed",
                processed=results.processed,
                successful=results.successful,
                failed=results.failed,
                released=results.released,
                pending=self._last_queue_status.pending,
            )
            return results
        finally:
            set_correlation_id(None)

    async def _release_unattempted(self, job_ids: list[UUID]) -> int:
        try:
            return await self.job_store.release_jobs(job_ids, self.worker_id)
        except Exception as e:
            # The leases expire on their own and stale recovery reclaims them
            self._logger.error(
                "embed_job_release_failed",
                count=len(job_ids),
                error=str(e),
                exc_info=True,
            )
            return 0

    async def _heartbeat_loop(self, job_ids: set[UUID]) -> None:
        """Extend leases of unfinished jobs until cancelled."""
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            if not job_ids:
                continue
            try:
                extended = await self.job_store.heartbeat_jobs(
                    list(job_ids), self.worker_id, self.lease_duration_ms
                )
                self._logger.debug("embed_job_heartbeat", extended=extended)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.warning("embed_job_heartbeat_failed", error=str(e), exc_info=True)

    async def _embed_text(self, text: str) -> list[float]:
        if self.cache is not None:
            cached = self.cache.get(text)
            if cached is not None:
                self.rate_limiter.update_actual_cost(0, self.config.estimated_tokens_per_job)
                return cached

        result = await self.provider.embed(text)
        self.rate_limiter.update_actual_cost(
            result.total_tokens or estimate_tokens(text),
            self.config.estimated_tokens_per_job,
        )

        if self.cache is not None:
            self.cache.put(text, result.vector)
        return result.vector

    async def _process_job(self, job: EmbedJob) -> bool:
        """Run one leased job to completion or a recorded failure.

        Returns:
            True if the embedding was stored.
        """
        bind_job_context(job_id=str(job.id), worker_id=self.worker_id)
        try:
            self._logger.debug(
                "embed_job_started",
                entity_name=job.entity_uid,
                attempt=job.attempts + 1,
                max_attempts=job.max_attempts,
            )
            try:
                entity = await self.storage.get_entity(job.entity_uid)
                if entity is None:
                    raise EntityNotFoundError(job.entity_uid)

                vector = await self._embed_text(prepare_entity_text(entity))
                await self.storage.store_entity_vector(
                    job.entity_uid,
                    EntityEmbedding(
                        vector=vector, model=job.model, last_updated=self._clock()
                    ),
                )

                completed = await self.job_store.complete_job(job.id, self.worker_id)
                if not completed:
                    self._logger.warning("embed_job_lease_lost", entity_name=job.entity_uid)

                self._record_outcome(True)
                self._logger.info(
                    "embed_job_succeeded",
                    entity_name=job.entity_uid,
                    model=job.model,
                    dimensions=len(vector),
                )
                return True
            except Exception as e:
                message = describe_error(e)
                self._record_outcome(False, message)
                self._logger.error(
                    "embed_job_failed",
                    entity_name=job.entity_uid,
                    error=message,
                    attempt=job.attempts + 1,
                    max_attempts=job.max_attempts,
                    exc_info=True,
                )
                await self.job_store.fail_job(job.id, self.worker_id, message)
                return False
        finally:
            clear_job_context()

    def _record_outcome(self, success: bool, error: str | None = None) -> None:
        self._outcomes.append(success)
        if success:
            self._consecutive_job_failures = 0
        else:
            self._consecutive_job_failures += 1
            self._last_error = error

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def recover_stale_jobs(self) -> int:
        """Reclaim jobs whose lease expired."""
        recovered = await self.job_store.recover_stale_jobs()
        if recovered:
            self._logger.info("stale_embed_jobs_recovered", count=recovered)
        return recovered

    async def cleanup_jobs(self, retention_days: int | None = None) -> int:
        """Delete completed and failed jobs older than the retention window.

        Args:
            retention_days: Retention window in days, 7 to 30 inclusive
                (defaults to config.retention_days)

        Returns:
            Number of jobs deleted.

        Raises:
            ValueError: If retention_days is outside 7-30
        """
        days = retention_days if retention_days is not None else self.config.retention_days
        deleted = await self.job_store.cleanup_jobs(retention_window_ms(days))
        self._logger.info("embed_jobs_cleanup_completed", retention_days=days, deleted=deleted)
        return deleted

    async def retry_failed_jobs(self) -> int:
        """Return every failed job to pending."""
        count = await self.job_store.retry_failed_jobs()
        self._logger.info("failed_embed_jobs_requeued", count=count)
        return count

    async def get_queue_status(self) -> QueueStatus:
        """Current job counts per status."""
        status = await self.job_store.get_queue_status()
        self._last_queue_status = status
        return status

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return bool(self._runners)

    async def start(self) -> None:
        """Run one recovery pass, then start the background loops."""
        if self._runners:
            self._logger.warning("embedding_job_manager_already_running")
            return

        try:
            await self.recover_stale_jobs()
        except Exception as e:
            # The recovery loop retries on its own schedule
            self._logger.error("startup_recovery_failed", error=str(e), exc_info=True)

        self._runners.append(
            RecurringTaskRunner(
                name="processing",
                interval_seconds=self.config.process_interval_seconds,
                task=self.process_jobs,
                retry_policy=self.retry_policy,
            )
        )
        if self.config.recovery_interval_seconds > 0:
            self._runners.append(
                RecurringTaskRunner(
                    name="recovery",
                    interval_seconds=self.config.recovery_interval_seconds,
                    task=self.recover_stale_jobs,
                    retry_policy=self.retry_policy,
                    delay_first_run=True,
                )
            )
        else:
            self._logger.info("stale_recovery_loop_disabled")
        self._runners.append(
            RecurringTaskRunner(
                name="cleanup",
                interval_seconds=self.config.cleanup_interval_seconds,
                task=self.cleanup_jobs,
                retry_policy=self.retry_policy,
            )
        )

        for runner in self._runners:
            await runner.start()

        self._logger.info(
            "embedding_job_manager_started",
            loops=[runner.name for runner in self._runners],
        )

    async def stop(self) -> None:
        """Stop all background loops."""
        if not self._runners:
            return

        for runner in self._runners:
            await runner.stop()
        self._runners = []

        self._logger.info("embedding_job_manager_stopped")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_health_status(self) -> HealthStatus:
        """Summarize health from in-memory state without touching the store."""
        loops = [
            LoopStatus(
                name=runner.name,
                running=runner.is_running,
                halted=runner.halted,
                consecutive_failures=runner.consecutive_failures,
                last_error=runner.last_error,
            )
            for runner in self._runners
        ]

        consecutive = max(
            [self._consecutive_job_failures] + [loop.consecutive_failures for loop in loops]
        )
        last_error = self._last_error
        for loop in loops:
            if loop.last_error is not None and loop.consecutive_failures:
                last_error = loop.last_error

        reasons: list[str] = []
        halted = [loop.name for loop in loops if loop.halted]
        for name in halted:
            reasons.append(f"{name} loop halted")

        if halted or consecutive >= self.config.critical_failure_threshold:
            state = HealthState.CRITICAL
            if consecutive >= self.config.critical_failure_threshold:
                reasons.append(f"{consecutive} consecutive failures")
        else:
            state = HealthState.HEALTHY
            if consecutive >= self.config.degraded_failure_threshold:
                state = HealthState.DEGRADED
                reasons.append(f"{consecutive} consecutive failures")
            queue = self._last_queue_status
            if queue is not None and queue.pending >= self.config.max_healthy_queue_depth:
                state = HealthState.DEGRADED
                reasons.append(f"{queue.pending} jobs pending")

        success_rate = (
            sum(self._outcomes) / len(self._outcomes) if self._outcomes else 1.0
        )

        return HealthStatus(
            status=state,
            worker_id=self.worker_id,
            consecutive_failures=consecutive,
            success_rate=success_rate,
            last_error=last_error,
            reasons=reasons,
            loops=loops,
            queue=self._last_queue_status,
            rate_limiter=self.rate_limiter.get_status(),
        )
