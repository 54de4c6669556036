"""Resilience patterns: circuit breaker and retry for the upstream token call.

Provides the three-state ``CircuitBreaker`` and the jittered exponential
``RetryPolicy`` used by ``UpstreamClient`` to protect the token endpoint
from retry storms and to fail fast while it is degraded.
"""

from src.resilience.circuit_breaker import (
    Admission,
    CircuitBreaker,
    CircuitState,
)
from src.resilience.retry import RetryPolicy

__all__ = [
    "Admission",
    "CircuitBreaker",
    "CircuitState",
    "RetryPolicy",
]
