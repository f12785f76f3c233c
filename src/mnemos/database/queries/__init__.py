"""Database query functions for Mnemos.

Atomic state transitions of the embedding job queue: enqueue, lease,
heartbeat, complete, fail, release, stale-lease recovery, retry, retention
cleanup and status counts.
"""

from mnemos.database.queries.job import (
    count_jobs_by_status,
    delete_terminal_jobs,
    extend_leases,
    get_job,
    insert_job,
    lease_pending_jobs,
    mark_completed,
    mark_failed,
    recover_expired_leases,
    release_leases,
    reset_failed_jobs,
)

__all__ = [
    "insert_job",
    "lease_pending_jobs",
    "extend_leases",
    "mark_completed",
    "mark_failed",
    "release_leases",
    "recover_expired_leases",
    "reset_failed_jobs",
    "delete_terminal_jobs",
    "count_jobs_by_status",
    "get_job",
]
