"""
Circuit breaker for the model endpoint and the employee directory.
A failing dependency is cut off after repeated errors instead of stalling every turn.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import contextmanager
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class CircuitBreakerOpenError(RuntimeError):
    """The protected dependency is cut off; no call was made."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"{name} is unavailable, retry in {retry_after:.0f}s")
        self.retry_after = retry_after


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure breaker shared by sync (``call``) and async
    (``call_async``) callers.

    - CLOSED -> OPEN after ``failure_threshold`` consecutive failures
    - OPEN -> HALF_OPEN once ``timeout`` seconds have passed since the last failure
    - HALF_OPEN -> CLOSED on the trial call's success, back to OPEN on its failure
    """

    def __init__(self, failure_threshold: int = 5, timeout: int = 60, name: str = "CircuitBreaker"):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: float | None = None
        logger.info(f"{name}: threshold={failure_threshold} failures, reset after {timeout}s")

    def call(self, func: Callable, *args, **kwargs) -> Any:
        with self._guard():
            return func(*args, **kwargs)

    async def call_async(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        with self._guard():
            return await func(*args, **kwargs)

    @contextmanager
    def _guard(self):
        self._admit()
        try:
            yield
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()

    def _admit(self):
        if self.state is not CircuitState.OPEN:
            return
        remaining = self._seconds_until_retry()
        if remaining > 0:
            raise CircuitBreakerOpenError(self.name, remaining)
        self._transition(CircuitState.HALF_OPEN)

    def _on_success(self):
        self.failure_count = 0
        self.last_failure_time = None
        if self.state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def _on_failure(self, error: Exception):
        self.failure_count += 1
        self.last_failure_time = time.time()
        logger.error(f"{self.name} failure {self.failure_count}/{self.failure_threshold}: {error}")
        tripped = self.failure_count >= self.failure_threshold
        if self.state is CircuitState.HALF_OPEN or (tripped and self.state is CircuitState.CLOSED):
            self._transition(CircuitState.OPEN)

    def _seconds_until_retry(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        return max(0.0, self.timeout - (time.time() - self.last_failure_time))

    def _transition(self, state: CircuitState):
        level = logging.WARNING if state is CircuitState.OPEN else logging.INFO
        logger.log(level, f"{self.name}: {self.state.name} -> {state.name}")
        self.state = state

    def get_state(self) -> dict:
        """Snapshot for /health and /metrics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "retry_after": round(self._seconds_until_retry(), 1) if self.state is CircuitState.OPEN else 0.0,
        }
