"""Mnemos - durable embedding job processing for agent memory graphs.

This package provides the background job subsystem of an agent memory layer:
a lease-based embedding job queue backed by PostgreSQL, a worker-side job
manager, a multi-window rate limiter for the embedding provider, and the
error classification and retry policy shared by all recurring tasks.
"""

__version__ = "0.1.0"
