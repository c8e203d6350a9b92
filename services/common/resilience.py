"""
Shared — retry with backoff and circuit breaker

Outbound calls to peer services are wrapped twice:

  with_retry(lambda: breaker.call(request), policy)

with_retry retries a failing coroutine with exponential backoff and jitter:

    delay(attempt) = min(base * multiplier ** (attempt - 1) * U(0.5, 1.5), max)

The circuit breaker counts consecutive failures. After failure_threshold of
them it opens and rejects calls immediately (CircuitOpenError, which is not
retried) until reset_timeout has passed; then a single trial call is let
through (HALF_OPEN). The trial closes the circuit on success and re-opens it
on failure.
"""

import asyncio
import enum
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0


def calculate_delay(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before retry number `attempt` (1-based)."""
    exponential = policy.base_delay * policy.multiplier ** (attempt - 1)
    jittered = exponential * (0.5 + rand())
    return min(jittered, policy.max_delay)


def _retry_everything(_exc: BaseException) -> bool:
    return True


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    *,
    retryable: Callable[[BaseException], bool] = _retry_everything,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await fn()
        except CircuitOpenError:
            raise
        except Exception as exc:
            if not retryable(exc):
                logger.warning("Non-retryable error, failing fast: %s", exc)
                raise
            if attempt == policy.max_attempts:
                logger.error("All %d attempts failed: %s", policy.max_attempts, exc)
                raise
            delay = calculate_delay(attempt, policy)
            logger.warning(
                "Attempt %d failed, retrying in %.0fms: %s", attempt, delay * 1000, exc
            )
            await sleep(delay)
        else:
            if attempt > 1:
                logger.info("Operation succeeded after %d attempts", attempt)
            return result
    raise RuntimeError("RetryPolicy.max_attempts must be at least 1")


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker '{name}' is OPEN")
        self.name = name


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        self._before_call()
        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _before_call(self) -> None:
        if self._state is CircuitState.OPEN:
            if self._clock() - (self._opened_at or 0.0) < self.reset_timeout:
                raise CircuitOpenError(self.name)
            logger.info("Circuit '%s' half-open, allowing a trial call", self.name)
            self._state = CircuitState.HALF_OPEN
        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

    def _on_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("Circuit '%s' closed", self.name)
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def _on_failure(self) -> None:
        self._failures += 1
        self._trial_in_flight = False
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state is not CircuitState.OPEN:
                logger.warning(
                    "Circuit '%s' opened after %d consecutive failures",
                    self.name,
                    self._failures,
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
