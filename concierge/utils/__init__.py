"""Concierge utility modules."""

from .resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    ResilienceExecutor,
    RetryPolicy,
    retry_with_backoff,
)

__all__ = [
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ResilienceExecutor",
    "RetryPolicy",
    "retry_with_backoff",
]
