"""Multi-window rate limiting for the embedding provider.

The limiter enforces three tumbling windows at once: requests per minute,
tokens per minute and requests per day, plus an optional minimum spacing
between consecutive requests. Callers reserve capacity for one request and
an estimated token cost before calling the provider, then reconcile the
estimate with the provider's reported usage.

Each window records when it started; once a full window length has elapsed
its counters reset and a new window starts at the current time.

Counters are process-local. Several worker processes sharing one provider
quota each enforce their own limits.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

import structlog
from pydantic import BaseModel

from mnemos.config import RateLimitConfig
from mnemos.errors import RateLimitExceededError

logger = structlog.get_logger(__name__)

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86400.0

# Added to computed window waits so the window has rolled over on wake-up
WINDOW_BUFFER_SECONDS = 0.1


class RateLimitStatus(BaseModel):
    """Snapshot of rate limiter usage.

    Attributes:
        requests_this_minute: Requests counted in the current minute window
        tokens_this_minute: Token cost counted in the current minute window
        requests_today: Requests counted in the current day window
        requests_per_minute: Configured per-minute request limit
        tokens_per_minute: Configured per-minute token limit
        requests_per_day: Configured per-day request limit
        minute_resets_in_seconds: Time until the minute window rolls over
        day_resets_in_seconds: Time until the day window rolls over
    """

    requests_this_minute: int
    tokens_this_minute: int
    requests_today: int
    requests_per_minute: int
    tokens_per_minute: int
    requests_per_day: int
    minute_resets_in_seconds: float
    day_resets_in_seconds: float


class RateLimiter:
    """Gate in front of the embedding provider.

    Reservation happens synchronously after the final capacity check, with
    no suspension point in between, so concurrent coroutines in one event
    loop cannot over-reserve a window.

    Args:
        config: Window limits and minimum request spacing
        clock: Monotonic time source in seconds
        sleep: Coroutine used to wait for capacity
    """

    def __init__(
        self,
        config: RateLimitConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._clock = clock
        self._sleep = sleep

        now = clock()
        self._minute_start = now
        self._day_start = now
        self._requests_this_minute = 0
        self._tokens_this_minute = 0
        self._requests_today = 0
        self._last_request_at: float | None = None

        logger.info(
            "rate_limiter_initialized",
            requests_per_minute=config.requests_per_minute,
            tokens_per_minute=config.tokens_per_minute,
            requests_per_day=config.requests_per_day,
        )

    def _roll_windows(self, now: float) -> None:
        if now - self._minute_start >= MINUTE_SECONDS:
            self._minute_start = now
            self._requests_this_minute = 0
            self._tokens_this_minute = 0
        if now - self._day_start >= DAY_SECONDS:
            self._day_start = now
            self._requests_today = 0

    def _required_wait(self, now: float, estimated_cost: int) -> float:
        """Seconds until one request of estimated_cost fits every window."""
        wait = 0.0

        minute_full = (
            self._requests_this_minute >= self.config.requests_per_minute
            or self._tokens_this_minute + estimated_cost > self.config.tokens_per_minute
        )
        if minute_full:
            wait = self._minute_start + MINUTE_SECONDS - now + WINDOW_BUFFER_SECONDS

        if self._last_request_at is not None and self.config.min_interval_seconds > 0:
            spacing = self._last_request_at + self.config.min_interval_seconds - now
            wait = max(wait, spacing)

        return max(0.0, wait)

    async def wait_for_capacity(
        self,
        estimated_cost: int = 500,
        max_wait_seconds: float | None = None,
    ) -> float:
        """Wait until a request of estimated_cost tokens may proceed, then reserve it.

        Args:
            estimated_cost: Tokens to reserve in the minute window
            max_wait_seconds: Longest acceptable total wait (None waits as
                long as needed within the day window)

        Returns:
            Total seconds spent waiting

        Raises:
            RateLimitExceededError: If the daily request cap is exhausted, if
                estimated_cost alone exceeds the per-minute token limit, or if
                the wait would exceed max_wait_seconds
            ValueError: If estimated_cost is negative
        """
        if estimated_cost < 0:
            raise ValueError(f"estimated_cost must be >= 0, got {estimated_cost}")
        if estimated_cost > self.config.tokens_per_minute:
            raise RateLimitExceededError(
                f"Estimated cost {estimated_cost} exceeds the per-minute token "
                f"limit {self.config.tokens_per_minute}"
            )

        waited = 0.0
        while True:
            now = self._clock()
            self._roll_windows(now)

            if self._requests_today >= self.config.requests_per_day:
                retry_after = self._day_start + DAY_SECONDS - now
                logger.warning(
                    "rate_limit_daily_exhausted",
                    requests_today=self._requests_today,
                    retry_after_seconds=retry_after,
                )
                raise RateLimitExceededError(
                    f"Daily request limit {self.config.requests_per_day} exhausted",
                    retry_after_seconds=retry_after,
                )

            wait = self._required_wait(now, estimated_cost)
            if wait <= 0:
                self._requests_this_minute += 1
                self._tokens_this_minute += estimated_cost
                self._requests_today += 1
                self._last_request_at = now
                return waited

            if max_wait_seconds is not None and waited + wait > max_wait_seconds:
                raise RateLimitExceededError(
                    f"Rate limit capacity not available within {max_wait_seconds}s",
                    retry_after_seconds=wait,
                )

            logger.info(
                "rate_limit_waiting",
                wait_seconds=round(wait, 3),
                requests_this_minute=self._requests_this_minute,
                tokens_this_minute=self._tokens_this_minute,
            )
            await self._sleep(wait)
            waited += wait

    def update_actual_cost(self, actual_cost: int, estimated_cost: int) -> None:
        """Replace a reserved token estimate with the provider's reported usage.

        Args:
            actual_cost: Tokens the provider reported for the request
            estimated_cost: Tokens reserved by wait_for_capacity
        """
        self._roll_windows(self._clock())
        adjusted = self._tokens_this_minute + (actual_cost - estimated_cost)
        self._tokens_this_minute = max(0, adjusted)

    def get_status(self) -> RateLimitStatus:
        """Report current window usage and limits."""
        now = self._clock()
        self._roll_windows(now)
        return RateLimitStatus(
            requests_this_minute=self._requests_this_minute,
            tokens_this_minute=self._tokens_this_minute,
            requests_today=self._requests_today,
            requests_per_minute=self.config.requests_per_minute,
            tokens_per_minute=self.config.tokens_per_minute,
            requests_per_day=self.config.requests_per_day,
            minute_resets_in_seconds=max(0.0, self._minute_start + MINUTE_SECONDS - now),
            day_resets_in_seconds=max(0.0, self._day_start + DAY_SECONDS - now),
        )
