"""Exponential backoff with jitter for transient failures.

The delay for the n-th consecutive transient failure is::

    capped = min(base * multiplier ** (n - 1), max_delay)
    delay  = max(0, capped + capped * jitter_factor * (random() - 0.5))

so the jitter spreads ``jitter_factor`` of the capped delay evenly around it.
"""

from __future__ import annotations

import random
from typing import Callable

from mnemos.config import RetryPolicy


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> float:
    """Compute the backoff delay before the next retry.

    Args:
        attempt: 1-based count of consecutive transient failures
        policy: Backoff parameters
        rand: Source of uniform [0, 1) values, injectable for tests

    Returns:
        Delay in seconds, never negative

    Raises:
        ValueError: If attempt is less than 1
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    try:
        exponential = policy.base_delay_seconds * policy.multiplier ** (attempt - 1)
    except OverflowError:
        exponential = policy.max_delay_seconds
    capped = min(exponential, policy.max_delay_seconds)
    jitter = capped * policy.jitter_factor * (rand() - 0.5)
    return max(0.0, capped + jitter)
