"""Integration tests for the embedding job store.

Covers idempotent enqueue, lease ordering and exclusivity, heartbeats,
ownership checks on complete/fail/release, stale lease recovery, operator
retry, retention cleanup and queue status counts.
"""

from __future__ import annotations

from uuid import UUID, uuid4

import pytest

from mnemos.database.models.job import JobStatus
from mnemos.jobs.store import JobStore

MODEL = "text-embedding-3-small"
LEASE_MS = 60_000
DAY_MS = 24 * 60 * 60 * 1000


async def _enqueue(store: JobStore, clock, name: str, priority: int = 1, **kwargs) -> UUID:
    job_id = await store.enqueue_job(name, MODEL, "1", priority=priority, **kwargs)
    assert job_id is not None
    clock.advance(1)
    return job_id


@pytest.mark.integration
class TestEnqueue:
    """Tests for idempotent job creation."""

    async def test_enqueue_creates_pending_job(self, job_store: JobStore, clock) -> None:
        """Test a new job starts pending with no attempts and no lock."""
        job_id = await job_store.enqueue_job("Alice", MODEL, "1", priority=2)

        job = await job_store.get_job(job_id)
        assert job is not None
        assert job.entity_uid == "Alice"
        assert job.model == MODEL
        assert job.version == "1"
        assert job.status == JobStatus.pending.value
        assert job.priority == 2
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.lock_owner is None
        assert job.lock_until is None
        assert job.created_at == clock.now
        assert job.processed_at is None

    async def test_duplicate_key_returns_none(self, job_store: JobStore) -> None:
        """Test enqueueing the same entity, model and version twice creates one job."""
        first = await job_store.enqueue_job("Alice", MODEL, "1")
        second = await job_store.enqueue_job("Alice", MODEL, "1")

        assert first is not None
        assert second is None
        status = await job_store.get_queue_status()
        assert status.total == 1

    async def test_duplicate_of_completed_job_returns_none(self, job_store: JobStore) -> None:
        """Test the key stays taken after the job reaches a terminal state."""
        job_id = await job_store.enqueue_job("Alice", MODEL, "1")
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)
        assert await job_store.complete_job(job_id, "worker-1") is True

        assert await job_store.enqueue_job("Alice", MODEL, "1") is None

    async def test_new_version_creates_new_job(self, job_store: JobStore) -> None:
        """Test a different version of the same entity is a distinct job."""
        first = await job_store.enqueue_job("Alice", MODEL, "1")
        second = await job_store.enqueue_job("Alice", MODEL, "2")

        assert first is not None
        assert second is not None
        assert first != second

    async def test_invalid_max_attempts(self, job_store: JobStore) -> None:
        """Test max_attempts below one is rejected."""
        with pytest.raises(ValueError):
            await job_store.enqueue_job("Alice", MODEL, "1", max_attempts=0)


@pytest.mark.integration
class TestLease:
    """Tests for lease acquisition."""

    async def test_lease_orders_by_priority_then_age(self, job_store: JobStore, clock) -> None:
        """Test higher priority first, oldest first within a priority."""
        low_old = await _enqueue(job_store, clock, "low-old", priority=1)
        high = await _enqueue(job_store, clock, "high", priority=5)
        low_new = await _enqueue(job_store, clock, "low-new", priority=1)

        jobs = await job_store.lease_jobs(10, "worker-1", LEASE_MS)

        assert [job.id for job in jobs] == [high, low_old, low_new]

    async def test_lease_sets_lock_fields(self, job_store: JobStore, clock) -> None:
        """Test leased jobs are processing, owned and expire after the lease."""
        await _enqueue(job_store, clock, "Alice")

        jobs = await job_store.lease_jobs(1, "worker-1", LEASE_MS)

        assert len(jobs) == 1
        job = jobs[0]
        assert job.status == JobStatus.processing.value
        assert job.lock_owner == "worker-1"
        assert job.lock_until == clock.now + LEASE_MS

    async def test_lease_respects_batch_size(self, job_store: JobStore, clock) -> None:
        """Test at most batch_size jobs are leased, highest priority first."""
        for i in range(5):
            await _enqueue(job_store, clock, f"entity-{i}", priority=i)

        jobs = await job_store.lease_jobs(2, "worker-1", LEASE_MS)

        assert [job.entity_uid for job in jobs] == ["entity-4", "entity-3"]
        status = await job_store.get_queue_status()
        assert status.processing == 2
        assert status.pending == 3

    async def test_leases_are_exclusive(self, job_store: JobStore, clock) -> None:
        """Test a second worker never receives jobs leased by the first."""
        for name in ("a", "b", "c"):
            await _enqueue(job_store, clock, name)

        first = await job_store.lease_jobs(2, "worker-1", LEASE_MS)
        second = await job_store.lease_jobs(3, "worker-2", LEASE_MS)

        first_ids = {job.id for job in first}
        second_ids = {job.id for job in second}
        assert len(first_ids) == 2
        assert len(second_ids) == 1
        assert first_ids.isdisjoint(second_ids)
        assert all(job.lock_owner == "worker-2" for job in second)

    async def test_lease_empty_queue(self, job_store: JobStore) -> None:
        """Test leasing from an empty queue returns an empty list."""
        assert await job_store.lease_jobs(5, "worker-1", LEASE_MS) == []

    async def test_lease_argument_validation(self, job_store: JobStore) -> None:
        """Test invalid batch size and lease duration are rejected."""
        with pytest.raises(ValueError):
            await job_store.lease_jobs(0, "worker-1", LEASE_MS)
        with pytest.raises(ValueError):
            await job_store.lease_jobs(1, "worker-1", 0)


@pytest.mark.integration
class TestHeartbeat:
    """Tests for lease extension."""

    async def test_heartbeat_extends_owned_leases(self, job_store: JobStore, clock) -> None:
        """Test the owner's heartbeat pushes lock_until forward."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)

        clock.advance(30_000)
        extended = await job_store.heartbeat_jobs([job_id], "worker-1", LEASE_MS)

        assert extended == 1
        job = await job_store.get_job(job_id)
        assert job.lock_until == clock.now + LEASE_MS

    async def test_heartbeat_ignores_other_workers(self, job_store: JobStore, clock) -> None:
        """Test a non-owner cannot extend a lease."""
        job_id = await _enqueue(job_store, clock, "Alice")
        jobs = await job_store.lease_jobs(1, "worker-1", LEASE_MS)
        original_until = jobs[0].lock_until

        clock.advance(30_000)
        extended = await job_store.heartbeat_jobs([job_id], "worker-2", LEASE_MS)

        assert extended == 0
        job = await job_store.get_job(job_id)
        assert job.lock_until == original_until

    async def test_heartbeat_empty_list(self, job_store: JobStore) -> None:
        """Test an empty heartbeat is a no-op."""
        assert await job_store.heartbeat_jobs([], "worker-1", LEASE_MS) == 0


@pytest.mark.integration
class TestCompleteAndFail:
    """Tests for terminal and failure transitions."""

    async def test_complete_by_owner(self, job_store: JobStore, clock) -> None:
        """Test completing an owned job clears the lock and records the time."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)

        assert await job_store.complete_job(job_id, "worker-1") is True

        job = await job_store.get_job(job_id)
        assert job.status == JobStatus.completed.value
        assert job.processed_at == clock.now
        assert job.lock_owner is None
        assert job.lock_until is None

    async def test_complete_by_non_owner_rejected(self, job_store: JobStore, clock) -> None:
        """Test a worker cannot complete another worker's job."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)

        assert await job_store.complete_job(job_id, "worker-2") is False
        job = await job_store.get_job(job_id)
        assert job.status == JobStatus.processing.value

    async def test_complete_twice_rejected(self, job_store: JobStore, clock) -> None:
        """Test completed jobs are immutable."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)
        await job_store.complete_job(job_id, "worker-1")

        assert await job_store.complete_job(job_id, "worker-1") is False
        assert await job_store.fail_job(job_id, "worker-1", "late failure") is False

    async def test_complete_unknown_job(self, job_store: JobStore) -> None:
        """Test completing a nonexistent job returns False."""
        assert await job_store.complete_job(uuid4(), "worker-1") is False

    async def test_fail_returns_job_to_pending(self, job_store: JobStore, clock) -> None:
        """Test a failure below max_attempts increments attempts and requeues."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)

        assert await job_store.fail_job(job_id, "worker-1", "transient: boom") is True

        job = await job_store.get_job(job_id)
        assert job.status == JobStatus.pending.value
        assert job.attempts == 1
        assert job.error == "transient: boom"
        assert job.processed_at == clock.now
        assert job.lock_owner is None
        assert job.lock_until is None

    async def test_fail_by_non_owner_rejected(self, job_store: JobStore, clock) -> None:
        """Test a worker cannot fail another worker's job."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)

        assert await job_store.fail_job(job_id, "worker-2", "boom") is False
        job = await job_store.get_job(job_id)
        assert job.attempts == 0

    async def test_three_failures_mark_job_failed(self, job_store: JobStore, clock) -> None:
        """Test a job with max_attempts=3 fails permanently on the third failure."""
        job_id = await _enqueue(job_store, clock, "Alice", max_attempts=3)

        for expected_attempts in (1, 2, 3):
            jobs = await job_store.lease_jobs(1, "worker-1", LEASE_MS)
            assert [job.id for job in jobs] == [job_id]
            await job_store.fail_job(job_id, "worker-1", f"failure {expected_attempts}")
            job = await job_store.get_job(job_id)
            assert job.attempts == expected_attempts

        job = await job_store.get_job(job_id)
        assert job.status == JobStatus.failed.value
        assert job.error == "failure 3"
        assert await job_store.lease_jobs(1, "worker-1", LEASE_MS) == []

        assert await job_store.retry_failed_jobs() == 1
        job = await job_store.get_job(job_id)
        assert job.status == JobStatus.pending.value
        assert job.attempts == 0
        assert job.error is None
        assert job.processed_at is None

        jobs = await job_store.lease_jobs(1, "worker-1", LEASE_MS)
        assert [job.id for job in jobs] == [job_id]


@pytest.mark.integration
class TestRelease:
    """Tests for returning leased jobs without consuming an attempt."""

    async def test_release_keeps_attempts(self, job_store: JobStore, clock) -> None:
        """Test released jobs are pending again with attempts unchanged."""
        first = await _enqueue(job_store, clock, "a")
        second = await _enqueue(job_store, clock, "b")
        await job_store.lease_jobs(2, "worker-1", LEASE_MS)

        released = await job_store.release_jobs([second], "worker-1")

        assert released == 1
        job = await job_store.get_job(second)
        assert job.status == JobStatus.pending.value
        assert job.attempts == 0
        assert job.lock_owner is None
        assert job.lock_until is None
        other = await job_store.get_job(first)
        assert other.status == JobStatus.processing.value

    async def test_release_by_non_owner(self, job_store: JobStore, clock) -> None:
        """Test a worker cannot release another worker's lease."""
        job_id = await _enqueue(job_store, clock, "a")
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)

        assert await job_store.release_jobs([job_id], "worker-2") == 0

    async def test_release_empty_list(self, job_store: JobStore) -> None:
        """Test releasing nothing is a no-op."""
        assert await job_store.release_jobs([], "worker-1") == 0


@pytest.mark.integration
class TestStaleRecovery:
    """Tests for reclaiming expired leases."""

    async def test_expired_lease_recovered(self, job_store: JobStore, clock) -> None:
        """Test an expired lease returns the job to pending with one more attempt."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", 1_000)

        clock.advance(1_001)
        assert await job_store.recover_stale_jobs() == 1

        job = await job_store.get_job(job_id)
        assert job.status == JobStatus.pending.value
        assert job.attempts == 1
        assert job.error == "lease expired"
        assert job.lock_owner is None
        assert job.lock_until is None

    async def test_recovery_is_idempotent(self, job_store: JobStore, clock) -> None:
        """Test a second recovery at the same instant changes nothing."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", 1_000)
        clock.advance(5_000)

        assert await job_store.recover_stale_jobs() == 1
        assert await job_store.recover_stale_jobs() == 0
        job = await job_store.get_job(job_id)
        assert job.attempts == 1

    async def test_live_lease_not_recovered(self, job_store: JobStore, clock) -> None:
        """Test a lease that has not yet expired is left alone."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", 1_000)

        clock.advance(1_000)
        assert await job_store.recover_stale_jobs() == 0
        job = await job_store.get_job(job_id)
        assert job.status == JobStatus.processing.value

    async def test_expiry_at_max_attempts_fails_job(self, job_store: JobStore, clock) -> None:
        """Test an expired lease on the last attempt marks the job failed."""
        job_id = await _enqueue(job_store, clock, "Alice", max_attempts=1)
        await job_store.lease_jobs(1, "worker-1", 1_000)

        clock.advance(2_000)
        await job_store.recover_stale_jobs()

        job = await job_store.get_job(job_id)
        assert job.status == JobStatus.failed.value
        assert job.attempts == 1

    async def test_old_owner_loses_job_after_recovery(self, job_store: JobStore, clock) -> None:
        """Test a worker whose lease expired cannot complete the job afterwards."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", 1_000)
        clock.advance(2_000)
        await job_store.recover_stale_jobs()
        await job_store.lease_jobs(1, "worker-2", LEASE_MS)

        assert await job_store.complete_job(job_id, "worker-1") is False
        assert await job_store.complete_job(job_id, "worker-2") is True


@pytest.mark.integration
class TestCleanupAndStatus:
    """Tests for retention cleanup and queue status."""

    async def test_cleanup_deletes_only_old_terminal_jobs(self, job_store: JobStore, clock) -> None:
        """Test completed/failed jobs past retention go; active and recent ones stay."""
        retention_ms = 7 * DAY_MS

        completed = await _enqueue(job_store, clock, "completed", priority=3)
        failed = await _enqueue(job_store, clock, "failed", priority=2, max_attempts=1)
        await job_store.lease_jobs(2, "worker-1", LEASE_MS)
        await job_store.complete_job(completed, "worker-1")
        await job_store.fail_job(failed, "worker-1", "permanent: bad input")

        clock.advance(retention_ms + 1)
        pending = await _enqueue(job_store, clock, "pending")
        recent = await _enqueue(job_store, clock, "recent", priority=9)
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)
        await job_store.complete_job(recent, "worker-1")

        deleted = await job_store.cleanup_jobs(retention_ms)

        assert deleted == 2
        assert await job_store.get_job(completed) is None
        assert await job_store.get_job(failed) is None
        assert await job_store.get_job(pending) is not None
        assert await job_store.get_job(recent) is not None

    async def test_cleanup_never_touches_processing(self, job_store: JobStore, clock) -> None:
        """Test a long-running lease is not deleted by cleanup."""
        job_id = await _enqueue(job_store, clock, "Alice")
        await job_store.lease_jobs(1, "worker-1", LEASE_MS)
        clock.advance(30 * DAY_MS)

        assert await job_store.cleanup_jobs(7 * DAY_MS) == 0
        assert await job_store.get_job(job_id) is not None

    async def test_cleanup_rejects_negative_retention(self, job_store: JobStore) -> None:
        with pytest.raises(ValueError):
            await job_store.cleanup_jobs(-1)

    async def test_queue_status_counts(self, job_store: JobStore, clock) -> None:
        """Test counts per status and total."""
        done = await _enqueue(job_store, clock, "done", priority=3)
        dead = await _enqueue(job_store, clock, "dead", priority=2, max_attempts=1)
        await _enqueue(job_store, clock, "busy", priority=1)
        await _enqueue(job_store, clock, "waiting", priority=0)

        await job_store.lease_jobs(3, "worker-1", LEASE_MS)
        await job_store.complete_job(done, "worker-1")
        await job_store.fail_job(dead, "worker-1", "permanent: nope")

        status = await job_store.get_queue_status()

        assert status.total == 4
        assert status.pending == 1
        assert status.processing == 1
        assert status.completed == 1
        assert status.failed == 1

    async def test_queue_status_empty(self, job_store: JobStore) -> None:
        status = await job_store.get_queue_status()
        assert status.total == 0
        assert status.pending == 0

    async def test_get_unknown_job(self, job_store: JobStore) -> None:
        assert await job_store.get_job(uuid4()) is None
