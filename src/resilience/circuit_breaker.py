"""Async circuit breaker guarding the upstream token endpoint.

Implements the standard three-state circuit breaker:

    CLOSED    →  (failure_threshold consecutive failures)  →  OPEN
    OPEN      →  (recovery_timeout elapsed, first caller)   →  HALF_OPEN
    HALF_OPEN →  (half_open_success_threshold successes)    →  CLOSED
    HALF_OPEN →  (any failure)                              →  OPEN

The breaker is one object per application, passed explicitly to the
``UpstreamClient``.  ``state``, the two counters, ``open_until``, the
set of held trial tickets are only ever changed
together under one lock.  Each admitted call carries an ``Admission``; only
the admission that took a trial slot can give it back.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class Admission:
    """Ticket for one admitted call.

    ``ticket`` is unique per breaker; ``trial`` is set when the call took a
    HALF_OPEN trial slot.
    """

    ticket: int
    trial: bool = False


class CircuitBreaker:
    """Async-safe circuit breaker for a single upstream.

    Args:
        name:                        Human-readable upstream name (for logging/errors).
        failure_threshold:           Consecutive failures before opening the circuit.
        recovery_timeout:            Seconds the circuit stays OPEN before a trial.
        half_open_success_threshold: Trial successes needed to close again.
        half_open_max:               Max concurrent trials in HALF_OPEN state.
        clock:                       Monotonic time source, in seconds.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_success_threshold: int = 1,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_success_threshold = half_open_success_threshold
        self.half_open_max = half_open_max
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._open_until: float = 0.0
        self._trial_tickets: set[int] = set()  # Trial slots held in HALF_OPEN
        self._tickets = itertools.count(1)
        self._lock = asyncio.Lock()

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.total_successes = 0

    # ── Public properties ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        """Return the stored state (OPEN → HALF_OPEN happens in ``is_available``)."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    @property
    def retry_after(self) -> float:
        """Seconds until an OPEN circuit admits a trial (0 otherwise)."""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._open_until - self._clock())

    # ── State machine ────────────────────────────────────────────────

    async def admit(self) -> Admission | None:
        """Admit a call upstream, or return ``None`` if the circuit rejects it.

        In HALF_OPEN the returned ``Admission`` holds one trial slot; hand it
        back to ``record_success``, ``record_failure`` or ``release`` so the
        slot is freed.  Admissions from an earlier half-open period, or from
        before the circuit opened, never free the current period's slots.
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if self._clock() < self._open_until:
                    self.total_rejections += 1
                    return None
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                self._trial_tickets.clear()
                logger.info("Circuit '%s' half-open, admitting trial request", self.name)

            ticket = next(self._tickets)
            trial = self._state == CircuitState.HALF_OPEN
            if trial:
                if len(self._trial_tickets) >= self.half_open_max:
                    self.total_rejections += 1
                    return None
                self._trial_tickets.add(ticket)

            self.total_calls += 1
            return Admission(ticket=ticket, trial=trial)

    async def is_available(self) -> bool:
        """Return whether a call may go upstream right now.

        Same as ``admit()`` but drops the admission, so a trial slot taken
        here is only given back when the circuit changes state.
        """
        return await self.admit() is not None

    async def record_success(self, admission: Admission | None = None) -> None:
        """Record a successful call; while half-open, count toward closing."""
        async with self._lock:
            self.total_successes += 1
            if self._state == CircuitState.CLOSED:
                self._failure_count = 0
            elif self._state == CircuitState.HALF_OPEN:
                if admission is not None and not self._holds_slot(admission):
                    # Admitted outside this half-open period; not a trial result
                    return
                if admission is not None:
                    self._trial_tickets.discard(admission.ticket)
                self._success_count += 1
                if self._success_count >= self.half_open_success_threshold:
                    self._close()
                    logger.info("Circuit '%s' closed after successful trial", self.name)
            # OPEN: late result from a call admitted before the trip; ignored

    async def record_failure(self, admission: Admission | None = None) -> None:
        """Record a failed call and open the circuit at the threshold.

        Any failure re-opens a half-open circuit, whichever period admitted
        the call, so *admission* only documents the caller here.
        """
        async with self._lock:
            self._failure_count += 1
            self.total_failures += 1

            if self._state == CircuitState.HALF_OPEN:
                self._open()
                logger.warning("Circuit '%s' trial failed, re-opened for %.1fs", self.name, self.recovery_timeout)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open()
                logger.warning(
                    "Circuit '%s' opened after %d consecutive failures",
                    self.name,
                    self._failure_count,
                )

    async def release(self, admission: Admission) -> None:
        """Give back the trial slot held by *admission* for a call with no health verdict."""
        async with self._lock:
            if self._holds_slot(admission):
                self._trial_tickets.discard(admission.ticket)

    async def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED state."""
        async with self._lock:
            self._close()

    # Callers must hold self._lock for the helpers below.

    def _holds_slot(self, admission: Admission) -> bool:
        return (
            self._state == CircuitState.HALF_OPEN
            and admission.trial
            and admission.ticket in self._trial_tickets
        )

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._open_until = self._clock() + self.recovery_timeout
        self._success_count = 0
        self._trial_tickets.clear()

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._open_until = 0.0
        self._trial_tickets.clear()

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for health/metrics."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "retry_after_seconds": round(self.retry_after, 2),
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "total_successes": self.total_successes,
        }
