"""Exception hierarchy and error classification for Mnemos.

Every failure seen by a background loop or a job is mapped to one of three
categories, which decide what happens next:

- TRANSIENT: retry with backoff (network blips, provider overload, 429s,
  lost database connections).
- PERMANENT: do not retry blindly (bad input, validation failures, 4xx).
- CRITICAL: stop the affected loop (the backing store is unusable).

Unrecognised errors are PERMANENT so that unknown failures are never retried
in a tight loop.
"""

from __future__ import annotations

import errno
from enum import Enum

import httpx
from pydantic import ValidationError
from sqlalchemy import exc as sa_exc


class ErrorCategory(str, Enum):
    """Failure category used to choose a retry strategy.

    Values:
        TRANSIENT: Retry after a backoff delay
        PERMANENT: Record the failure and move on
        CRITICAL: Halt the affected recurring loop
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CRITICAL = "critical"


class MnemosError(Exception):
    """Base class for all Mnemos errors."""


class EntityNotFoundError(MnemosError):
    """Raised when an entity referenced by a job or request does not exist."""

    def __init__(self, entity_name: str) -> None:
        super().__init__(f"Entity {entity_name} not found")
        self.entity_name = entity_name


class SchedulingError(MnemosError):
    """Raised when an embedding job could not be enqueued."""


class RateLimitExceededError(MnemosError):
    """Raised when rate-limit capacity cannot be obtained.

    Attributes:
        retry_after_seconds: Seconds until capacity is expected, if known
    """

    def __init__(self, message: str, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class JobStoreCorruptedError(MnemosError):
    """Raised when the job store is in a state no retry can repair."""


_NETWORK_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.ECONNREFUSED,
        errno.EPIPE,
        errno.ENETUNREACH,
        errno.EHOSTUNREACH,
        errno.ETIMEDOUT,
    }
)

_TRANSIENT_DB_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
)

_CRITICAL_DB_ERRORS = (
    sa_exc.InternalError,
    sa_exc.ProgrammingError,
    sa_exc.NotSupportedError,
)

_PERMANENT_DB_ERRORS = (
    sa_exc.IntegrityError,
    sa_exc.DataError,
)


def _classify_status_code(status_code: int) -> ErrorCategory:
    if status_code >= 500 or status_code == 429:
        return ErrorCategory.TRANSIENT
    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT
    return ErrorCategory.TRANSIENT


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify a failure into a retry category.

    Args:
        error: The exception raised by a task or job

    Returns:
        The ErrorCategory deciding how the caller reacts
    """
    if isinstance(error, JobStoreCorruptedError):
        return ErrorCategory.CRITICAL

    if isinstance(error, RateLimitExceededError):
        return ErrorCategory.TRANSIENT

    if isinstance(error, (EntityNotFoundError, SchedulingError)):
        return ErrorCategory.PERMANENT

    if isinstance(error, httpx.HTTPStatusError):
        return _classify_status_code(error.response.status_code)

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return ErrorCategory.TRANSIENT

    # Order matters: the DBAPI subclasses below all derive from DatabaseError
    if isinstance(error, _CRITICAL_DB_ERRORS):
        return ErrorCategory.CRITICAL

    if isinstance(error, _TRANSIENT_DB_ERRORS):
        return ErrorCategory.TRANSIENT

    if isinstance(error, _PERMANENT_DB_ERRORS):
        return ErrorCategory.PERMANENT

    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    if isinstance(error, OSError) and error.errno in _NETWORK_ERRNOS:
        return ErrorCategory.TRANSIENT

    if isinstance(error, (ValidationError, ValueError, TypeError)):
        return ErrorCategory.PERMANENT

    return ErrorCategory.PERMANENT


def describe_error(error: BaseException) -> str:
    """Render an exception as the message stored on a failed job.

    Args:
        error: The exception to describe

    Returns:
        String of the form "<category>: <ExceptionType>: <message>"
    """
    category = classify_error(error)
    return f"{category.value}: {type(error).__name__}: {error}"
