"""
Circuit Breaker for payment gateway calls.

States:
1. CLOSED: Normal operation, requests pass through
2. OPEN: After failures exceed threshold, requests fail fast
3. HALF_OPEN: After timeout, a limited number of trial requests are let through

Gateway clients are synchronous (they run inside request handlers that also
hold a database session), so the breaker is guarded by a threading.Lock.

Usage:
    from rest_api.services.payments.circuit_breaker import cashfree_breaker

    with cashfree_breaker.call():
        response = client.get(...)
"""

import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from shared.config.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    name: str
    failure_threshold: int = 5       # Consecutive failures before opening
    success_threshold: int = 2       # Successes in half-open before closing
    timeout_seconds: float = 30.0    # Time spent open before a trial call
    half_open_max_calls: int = 2     # Trial calls allowed while half-open


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0


class CircuitBreakerError(Exception):
    """Raised when the circuit is open and the call is rejected."""

    def __init__(self, breaker_name: str, retry_after: float):
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{breaker_name}' is open. Retry after {retry_after:.1f}s")


class CircuitBreaker:
    def __init__(self, config: CircuitBreakerConfig, clock=time.monotonic):
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_calls = 0
        self._opened_at: float | None = None
        self.stats = CircuitBreakerStats()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def _set_state(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self.stats.state_changes += 1
        self._successes = 0
        self._half_open_calls = 0
        if new_state == CircuitState.CLOSED:
            self._failures = 0
            self._opened_at = None
        elif new_state == CircuitState.OPEN:
            self._opened_at = self._clock()

        logger.info(
            "Circuit breaker state change",
            breaker=self.config.name,
            old_state=old_state.value,
            new_state=new_state.value,
        )

    def _acquire(self) -> None:
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.config.timeout_seconds:
                    self.stats.rejected_calls += 1
                    raise CircuitBreakerError(
                        self.config.name, self.config.timeout_seconds - elapsed
                    )
                self._set_state(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    self.stats.rejected_calls += 1
                    raise CircuitBreakerError(self.config.name, 1.0)
                self._half_open_calls += 1

            self.stats.total_calls += 1

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self.stats.failed_calls += 1
            self._failures += 1
            logger.warning(
                "Circuit breaker recorded failure",
                breaker=self.config.name,
                error=str(error) if error else None,
                failure_count=self._failures,
                threshold=self.config.failure_threshold,
            )
            if self._state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.OPEN)
            elif self._failures >= self.config.failure_threshold:
                self._set_state(CircuitState.OPEN)

    @contextmanager
    def call(self) -> Generator[None, None, None]:
        """
        Protect a block of gateway I/O.

        Raises:
            CircuitBreakerError: If the circuit is open
        """
        self._acquire()
        try:
            yield
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()

    def reset(self) -> None:
        with self._lock:
            self._set_state(CircuitState.CLOSED)

    def snapshot(self) -> dict[str, int | str]:
        return {
            "state": self.state.value,
            "total_calls": self.stats.total_calls,
            "failed_calls": self.stats.failed_calls,
            "rejected_calls": self.stats.rejected_calls,
            "state_changes": self.stats.state_changes,
        }


# Cashfree PG API: opens after 5 consecutive failures, retries after 30s
cashfree_breaker = CircuitBreaker(
    CircuitBreakerConfig(
        name="cashfree",
        failure_threshold=5,
        success_threshold=2,
        timeout_seconds=30.0,
        half_open_max_calls=2,
    )
)
