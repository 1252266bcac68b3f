"""Resilience patterns — per-endpoint circuit breaker and the shared retry policy.

The circuit breaker keeps load away from an endpoint that keeps failing;
the retry policy spaces and bounds retries for both the immediate passes
of a batch and the background retry queue.
"""

from inference_dispatch.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
)
from inference_dispatch.resilience.retry_policy import RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RetryPolicy",
]
