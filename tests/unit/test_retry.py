"""Unit tests for exponential backoff delays."""

from __future__ import annotations

import pytest

from mnemos.config import RetryPolicy
from mnemos.retry import compute_delay


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(
        base_delay_seconds=1.0,
        max_delay_seconds=60.0,
        multiplier=2.0,
        jitter_factor=0.1,
    )


def centred() -> float:
    return 0.5


class TestComputeDelay:
    """Tests for compute_delay."""

    def test_exponential_growth(self, policy: RetryPolicy) -> None:
        delays = [compute_delay(n, policy, rand=centred) for n in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self, policy: RetryPolicy) -> None:
        assert compute_delay(7, policy, rand=centred) == 60.0
        assert compute_delay(50, policy, rand=centred) == 60.0

    def test_huge_attempt_does_not_overflow(self, policy: RetryPolicy) -> None:
        assert compute_delay(5000, policy, rand=centred) == 60.0

    def test_jitter_bounds(self, policy: RetryPolicy) -> None:
        """Test jitter spreads the delay by half the jitter factor either way."""
        low = compute_delay(3, policy, rand=lambda: 0.0)
        high = compute_delay(3, policy, rand=lambda: 1.0)

        assert low == pytest.approx(4.0 * 0.95)
        assert high == pytest.approx(4.0 * 1.05)

    def test_default_random_within_bounds(self, policy: RetryPolicy) -> None:
        for _ in range(50):
            assert 0.95 <= compute_delay(1, policy) <= 1.05

    def test_no_jitter(self) -> None:
        policy = RetryPolicy(base_delay_seconds=0.5, jitter_factor=0.0)
        assert compute_delay(2, policy, rand=lambda: 0.9) == 1.0

    @pytest.mark.parametrize("attempt", [0, -1])
    def test_attempt_must_be_positive(self, policy: RetryPolicy, attempt: int) -> None:
        with pytest.raises(ValueError):
            compute_delay(attempt, policy)
