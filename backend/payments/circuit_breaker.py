"""
Circuit breaker for outbound provider calls.

Opens after a run of consecutive failures and rejects calls until the
reset timeout passes, then lets one probe through (half-open).
"""

import asyncio
import time
from enum import Enum
from functools import wraps
from typing import Callable, Optional

import structlog


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ConnectionError):
    """Raised instead of calling a provider whose circuit is open"""


class CircuitBreaker:
    """Circuit breaker for connection resilience"""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[float] = None
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    async def can_execute(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time is not None:
                    elapsed = self._clock() - self._last_failure_time
                    if elapsed >= self.reset_timeout:
                        self._state = CircuitState.HALF_OPEN
                        self._logger.info("circuit_half_open", elapsed=round(elapsed, 2))
                        return True
                return False

            return True

    async def record_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._logger.info("circuit_closed")
            self._state = CircuitState.CLOSED
            self._failures = 0

    async def record_failure(self, error: Exception = None):
        async with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))


def with_circuit_breaker(breaker_attr: str = "breaker", trip_on: tuple = (Exception,)):
    """
    Decorator for async methods guarded by the breaker stored on self.

    Only exceptions listed in trip_on count as failures; anything else
    means the provider answered, so the breaker treats it as healthy.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            breaker: CircuitBreaker = getattr(self, breaker_attr)
            if not await breaker.can_execute():
                raise CircuitOpenError(f"Circuit breaker {breaker.name} is OPEN")

            try:
                result = await func(self, *args, **kwargs)
            except trip_on as e:
                await breaker.record_failure(e)
                raise
            except Exception:
                await breaker.record_success()
                raise
            await breaker.record_success()
            return result
        return wrapper
    return decorator
