"""Tests for RetryPolicy backoff delays."""

import random

import pytest

from src.resilience.retry import RetryPolicy


class _FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__()
        self._value = value

    def random(self) -> float:
        return self._value


class TestDelay:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_retries == 2
        assert policy.max_attempts == 3
        assert policy.initial_delay_ms == 200.0
        assert policy.max_delay_ms == 2000.0
        assert policy.jitter_ratio == 0.3

    @pytest.mark.parametrize("attempt,base", [(0, 200.0), (1, 400.0), (2, 800.0), (3, 1600.0)])
    def test_no_jitter_is_exponential(self, attempt, base):
        policy = RetryPolicy(rng=_FixedRandom(0.0))
        assert policy.delay(attempt) == base

    def test_jitter_upper_end(self):
        policy = RetryPolicy(rng=_FixedRandom(0.999))
        assert policy.delay(1) == pytest.approx(400.0 + 0.999 * 0.3 * 400.0)

    def test_capped_at_max_delay_before_jitter(self):
        policy = RetryPolicy(rng=_FixedRandom(0.0))
        assert policy.delay(4) == 2000.0
        assert policy.delay(20) == 2000.0

    def test_delay_within_bounds_for_all_attempts(self):
        policy = RetryPolicy(rng=random.Random(1234))
        for attempt in range(12):
            base = min(200.0 * 2**attempt, 2000.0)
            for _ in range(50):
                d = policy.delay(attempt)
                assert base <= d < base * 1.3

    def test_negative_attempt_rejected(self):
        with pytest.raises(ValueError, match="attempt must be >= 0"):
            RetryPolicy().delay(-1)
