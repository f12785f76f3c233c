"""Recurring background task driver.

A RecurringTaskRunner executes one async task forever on a fixed interval
and reacts to failures according to their ErrorCategory:

- success: reset failure counters, wait the interval
- TRANSIENT: wait an exponential backoff delay, then rerun immediately
- PERMANENT: log, wait the normal interval
- CRITICAL: log, mark the runner halted and exit the loop

The manager uses one runner each for job processing, stale-lease recovery
and retention cleanup, and reads their counters for health reporting.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import structlog

from mnemos.config import RetryPolicy
from mnemos.errors import ErrorCategory, classify_error, describe_error
from mnemos.retry import compute_delay

logger = structlog.get_logger(__name__)


class RecurringTaskRunner:
    """Run an async task repeatedly with classification-driven retries.

    Attributes:
        name: Identifier used in logs and health output
        interval_seconds: Delay between runs after success or permanent failure
        retry_policy: Backoff parameters for transient failures
        delay_first_run: Wait one interval before the first run
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        task: Callable[[], Awaitable[Any]],
        retry_policy: RetryPolicy,
        delay_first_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")

        self.name = name
        self.interval_seconds = interval_seconds
        self.retry_policy = retry_policy
        self.delay_first_run = delay_first_run
        self._task_fn = task
        self._sleep = sleep
        self._loop_task: asyncio.Task | None = None
        self._stop_requested = False
        self._halted = False
        self._transient_attempts = 0
        self._consecutive_failures = 0
        self._last_error: str | None = None
        self._logger = logger.bind(runner=name)

    @property
    def halted(self) -> bool:
        """True once a CRITICAL failure stopped the loop."""
        return self._halted

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def request_stop(self) -> None:
        """Ask the loop to exit after the current iteration."""
        self._stop_requested = True

    async def run(self) -> None:
        """Run the task until stopped or halted by a CRITICAL failure."""
        self._logger.info(
            "recurring_task_started",
            interval_seconds=self.interval_seconds,
            delay_first_run=self.delay_first_run,
        )

        if self.delay_first_run:
            await self._sleep(self.interval_seconds)

        while not self._stop_requested:
            try:
                await self._task_fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = self._handle_failure(e)
                if delay is None:
                    return
                await self._sleep(delay)
                continue

            self._transient_attempts = 0
            self._consecutive_failures = 0
            await self._sleep(self.interval_seconds)

        self._logger.info("recurring_task_exited")

    def _handle_failure(self, error: Exception) -> float | None:
        """Record a failure and return the delay before the next run.

        Returns:
            Seconds to wait, or None if the runner must halt.
        """
        category = classify_error(error)
        self._consecutive_failures += 1
        self._last_error = describe_error(error)

        if category == ErrorCategory.CRITICAL:
            self._halted = True
            self._logger.critical(
                "recurring_task_halted",
                error=self._last_error,
                consecutive_failures=self._consecutive_failures,
                exc_info=error,
            )
            return None

        if category == ErrorCategory.TRANSIENT:
            self._transient_attempts += 1
            delay = compute_delay(self._transient_attempts, self.retry_policy)
            self._logger.warning(
                "recurring_task_transient_failure",
                error=self._last_error,
                attempt=self._transient_attempts,
                retry_in_seconds=round(delay, 3),
            )
            return delay

        self._transient_attempts = 0
        self._logger.error(
            "recurring_task_permanent_failure",
            error=self._last_error,
            consecutive_failures=self._consecutive_failures,
            exc_info=error,
        )
        return self.interval_seconds

    async def start(self) -> None:
        """Start the loop as a background task. No-op if already running."""
        if self.is_running:
            self._logger.warning("recurring_task_already_running")
            return

        self._stop_requested = False
        self._halted = False
        self._loop_task = asyncio.create_task(self.run(), name=f"mnemos-{self.name}")

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        self.request_stop()

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        self._logger.info("recurring_task_stopped")
