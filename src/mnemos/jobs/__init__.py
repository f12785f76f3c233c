"""Embedding job subsystem.

Public API:
    JobStore: Lease-based persistent job queue.
    RateLimiter: Multi-window gate in front of the embedding provider.
    RecurringTaskRunner: Background loop with classification-driven retries.
    EmbeddingJobManager: Scheduling, batch processing, maintenance and health.
    ImmediateEmbeddingWriter: Entity writer that processes jobs on creation.
"""

from mnemos.jobs.immediate import ImmediateEmbeddingWriter
from mnemos.jobs.manager import (
    EmbeddingJobManager,
    HealthState,
    HealthStatus,
    JobProcessResults,
    prepare_entity_text,
)
from mnemos.jobs.rate_limiter import RateLimiter, RateLimitStatus
from mnemos.jobs.runner import RecurringTaskRunner
from mnemos.jobs.store import JobStore, QueueStatus, now_ms

__all__ = [
    "EmbeddingJobManager",
    "HealthState",
    "HealthStatus",
    "ImmediateEmbeddingWriter",
    "JobProcessResults",
    "JobStore",
    "QueueStatus",
    "RateLimiter",
    "RateLimitStatus",
    "RecurringTaskRunner",
    "now_ms",
    "prepare_entity_text",
]
