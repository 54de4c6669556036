"""Exponential backoff with jitter for upstream retries.

``delay(attempt)`` is ``min(initial * 2**attempt, max)`` plus a random
jitter in ``[0, jitter_ratio * capped)``, so concurrent requests that fail
together do not retry in lockstep.
"""

from __future__ import annotations

import random


class RetryPolicy:
    """Backoff schedule for a bounded number of retries.

    Args:
        max_retries:      Retries after the first attempt (attempts = max_retries + 1).
        initial_delay_ms: Delay before the first retry, before jitter.
        max_delay_ms:     Cap applied before jitter.
        jitter_ratio:     Upper bound of the jitter as a fraction of the capped delay.
        rng:              Random source; pass a seeded ``random.Random`` in tests.
    """

    def __init__(
        self,
        max_retries: int = 2,
        initial_delay_ms: float = 200.0,
        max_delay_ms: float = 2000.0,
        jitter_ratio: float = 0.3,
        rng: random.Random | None = None,
    ) -> None:
        self.max_retries = max_retries
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int) -> float:
        """Return the backoff in milliseconds after failed *attempt* (0-based)."""
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        capped = min(self.initial_delay_ms * (2**attempt), self.max_delay_ms)
        return capped + self._rng.random() * self.jitter_ratio * capped
