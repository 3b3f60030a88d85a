"""Resilience utilities for remote calls.

Provides per-dependency circuit breakers, bounded exponential-backoff retry,
and an executor that composes the two.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from concierge.errors import CircuitOpenError, OperationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[[str, "CircuitState", "CircuitState", int], None]


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "CLOSED"        # Normal operation
    OPEN = "OPEN"            # Failing, rejecting calls
    HALF_OPEN = "HALF_OPEN"  # One trial call allowed through


@dataclass
class CircuitBreaker:
    """Circuit breaker for protecting against cascading failures.

    Usage:
        breaker = CircuitBreaker(name="openai_chat", threshold=5, reset_timeout=60)

        breaker.before_call()          # raises CircuitOpenError when open
        try:
            result = await call_external_service()
            breaker.record_success()
        except Exception:
            breaker.record_failure()
            raise
    """
    name: str
    threshold: int = 5
    reset_timeout: float = 60.0  # seconds
    clock: Callable[[], float] = time.time
    on_state_change: Optional[StateListener] = None

    # Internal state
    _failures: int = field(default=0, init=False)
    _last_failure_time: float | None = field(default=None, init=False)
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _trial_in_flight: bool = field(default=False, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure_time

    def _seconds_until_retry(self, now: float) -> float:
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        return max(0.0, self.reset_timeout - (now - self._last_failure_time))

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if self.on_state_change and old_state != new_state:
            try:
                self.on_state_change(self.name, old_state, new_state, self._failures)
            except Exception as e:
                logger.debug(f"Circuit '{self.name}' state listener failed: {e}")

    def before_call(self) -> None:
        """Admit or reject a call.

        Raises:
            CircuitOpenError: while OPEN and the reset timeout has not
                elapsed, or while a HALF_OPEN trial is already in flight.
        """
        with self._lock:
            now = self.clock()
            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                if now - (self._last_failure_time or 0.0) < self.reset_timeout:
                    raise CircuitOpenError(self.name, self._seconds_until_retry(now))
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
                return

            # HALF_OPEN admits exactly one trial at a time
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def is_available(self) -> bool:
        """Check whether a call would currently be admitted, without admitting it."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                return self.clock() - (self._last_failure_time or 0.0) >= self.reset_timeout
            return not self._trial_in_flight

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._failures = 0
                self._transition(CircuitState.CLOSED)
                logger.info(f"Circuit '{self.name}' CLOSED after recovery")
            elif self._failures:
                # Only consecutive failures trip the breaker
                self._failures = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        with self._lock:
            self._trial_in_flight = False
            self._failures += 1
            self._last_failure_time = self.clock()

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                logger.warning(f"Circuit '{self.name}' back to OPEN after failed recovery")
            elif self._state == CircuitState.CLOSED and self._failures >= self.threshold:
                self._transition(CircuitState.OPEN)
                logger.warning(
                    f"Circuit '{self.name}' OPENED after {self._failures} failures"
                )

    def abandon_trial(self) -> None:
        """Release a HALF_OPEN trial slot when the caller was cancelled."""
        with self._lock:
            self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under this breaker, without retries."""
        self.before_call()
        try:
            result = await operation()
        except asyncio.CancelledError:
            self.abandon_trial()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def get_state(self) -> dict[str, Any]:
        """Get circuit state for monitoring."""
        now = self.clock()
        if self._state == CircuitState.OPEN:
            status = "critical"
        elif self._state == CircuitState.HALF_OPEN:
            status = "warning"
        elif self._failures > 0:
            status = "degraded"
        else:
            status = "healthy"
        return {
            "name": self.name,
            "state": self._state.value,
            "status": status,
            "is_healthy": self._state == CircuitState.CLOSED,
            "failures": self._failures,
            "threshold": self.threshold,
            "failure_rate": self._failures / self.threshold if self.threshold else 0.0,
            "last_failure_time": self._last_failure_time,
            "seconds_since_failure": (
                now - self._last_failure_time if self._last_failure_time is not None else None
            ),
            "seconds_until_retry": self._seconds_until_retry(now),
        }

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._failures = 0
            self._last_failure_time = None
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)
        logger.info(f"Circuit '{self.name}' manually reset")


class CircuitBreakerRegistry:
    """One lazily-created breaker per guarded dependency."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
        on_state_change: Optional[StateListener] = None,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock
        self.on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, service_key: str) -> CircuitBreaker:
        breaker = self._breakers.get(service_key)
        if breaker is not None:
            return breaker
        with self._lock:
            if service_key not in self._breakers:
                self._breakers[service_key] = CircuitBreaker(
                    name=service_key,
                    threshold=self.failure_threshold,
                    reset_timeout=self.reset_timeout,
                    clock=self.clock,
                    on_state_change=self.on_state_change,
                )
            return self._breakers[service_key]

    def __contains__(self, service_key: str) -> bool:
        return service_key in self._breakers

    def keys(self) -> list[str]:
        return list(self._breakers)

    async def call(self, service_key: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.get(service_key).call(operation)

    def reset(self, service_key: str) -> bool:
        breaker = self._breakers.get(service_key)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def status(self) -> dict[str, dict[str, Any]]:
        return {key: b.get_state() for key, b in list(self._breakers.items())}

    def health_check(self) -> dict[str, Any]:
        """Aggregate health of every guarded dependency."""
        services = self.status()
        critical = [k for k, s in services.items() if s["status"] == "critical"]
        return {
            "timestamp": self.clock(),
            "overall": "degraded" if critical else "healthy",
            "services": services,
            "unhealthy_services": [k for k, s in services.items() if not s["is_healthy"]],
        }

    def metrics(self) -> dict[str, Any]:
        services = self.status()
        summary = {
            "total_services": len(services),
            "healthy_services": 0,
            "degraded_services": 0,
            "critical_services": 0,
        }
        for s in services.values():
            if s["status"] == "healthy":
                summary["healthy_services"] += 1
            elif s["status"] == "critical":
                summary["critical_services"] += 1
            else:
                summary["degraded_services"] += 1
        return {"circuit_breakers": services, "summary": summary}


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: min(base * multiplier^(attempt-1), max_delay)."""
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    operation_name: str | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Retry an async callable with exponential backoff.

    ``CircuitOpenError`` is terminal and re-raised immediately.

    Args:
        func: Zero-argument async callable to retry
        policy: Attempt budget and delay schedule
        operation_name: Name used in log lines
        sleep: Awaitable sleep, injectable for tests

    Returns:
        Result from the first successful attempt

    Raises:
        The last exception once every attempt has failed
    """
    name = operation_name or getattr(func, "__name__", "operation")
    attempts = max(1, policy.max_attempts)
    last_exception: Exception | None = None

    for attempt in range(1, attempts + 1):
        try:
            result = await func()
            if attempt > 1:
                logger.info(f"{name} succeeded on attempt {attempt}/{attempts}")
            return result
        except CircuitOpenError:
            raise
        except Exception as e:
            last_exception = e
            if attempt < attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt}/{attempts} for {name} failed "
                    f"({type(e).__name__}: {e}). Waiting {delay:.2f}s"
                )
                await sleep(delay)
            else:
                logger.error(f"All {attempts} attempts exhausted for {name}: {e}")

    raise last_exception


class ResilienceExecutor:
    """Circuit breaker + retry, keyed by dependency.

    ``execute`` fails fast with ``CircuitOpenError`` while the breaker is
    open, otherwise retries the operation within its budget and counts one
    breaker failure when the budget is exhausted.
    """

    def __init__(
        self,
        registry: CircuitBreakerRegistry,
        default_policy: RetryPolicy = RetryPolicy(),
        ai_policy: RetryPolicy = RetryPolicy(max_attempts=2, base_delay=2.0),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.default_policy = default_policy
        self.ai_policy = ai_policy
        self._sleep = sleep

    async def execute(
        self,
        service_key: str,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        operation_name: str | None = None,
    ) -> T:
        breaker = self.registry.get(service_key)
        breaker.before_call()

        name = operation_name or service_key
        budget = policy or self.default_policy
        try:
            result = await retry_with_backoff(operation, budget, name, self._sleep)
        except asyncio.CancelledError:
            breaker.abandon_trial()
            raise
        except CircuitOpenError:
            # A nested dependency is open; that is a failure of this one too
            breaker.record_failure()
            raise
        except Exception as e:
            breaker.record_failure()
            raise OperationError(name, budget.max_attempts) from e

        breaker.record_success()
        return result

    async def execute_ai(
        self,
        service_key: str,
        operation: Callable[[], Awaitable[T]],
        operation_name: str | None = None,
    ) -> T:
        """Same as ``execute`` with the shorter, slower AI retry budget."""
        return await self.execute(service_key, operation, self.ai_policy, operation_name)
