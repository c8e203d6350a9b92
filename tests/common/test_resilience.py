import pytest

from services.common.resilience import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    RetryPolicy,
    calculate_delay,
    with_retry,
)


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class Flaky:
    """Fails `failures` times, then returns `value`."""

    def __init__(self, failures: int, value="ok", exc: Exception | None = None) -> None:
        self.failures = failures
        self.value = value
        self.exc = exc or ConnectionError("boom")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return self.value


async def no_sleep(_delay: float) -> None:
    return None


def test_delay_grows_exponentially_within_jitter_bounds():
    policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=100.0)
    for attempt, nominal in [(1, 1.0), (2, 2.0), (3, 4.0), (4, 8.0)]:
        assert calculate_delay(attempt, policy, rand=lambda: 0.0) == pytest.approx(nominal * 0.5)
        assert calculate_delay(attempt, policy, rand=lambda: 0.5) == pytest.approx(nominal)
        assert calculate_delay(attempt, policy, rand=lambda: 0.999) < nominal * 1.5


def test_delay_is_capped():
    policy = RetryPolicy(base_delay=1.0, multiplier=10.0, max_delay=5.0)
    assert calculate_delay(6, policy, rand=lambda: 0.999) == 5.0


async def test_with_retry_recovers_from_transient_failures():
    fn = Flaky(failures=2)
    delays = []

    async def sleep(delay):
        delays.append(delay)

    assert await with_retry(fn, RetryPolicy(max_attempts=3), sleep=sleep) == "ok"
    assert fn.calls == 3
    assert len(delays) == 2


async def test_with_retry_gives_up_after_max_attempts():
    fn = Flaky(failures=5)
    with pytest.raises(ConnectionError):
        await with_retry(fn, RetryPolicy(max_attempts=3), sleep=no_sleep)
    assert fn.calls == 3


async def test_non_retryable_error_fails_fast():
    fn = Flaky(failures=5, exc=ValueError("bad request"))
    with pytest.raises(ValueError):
        await with_retry(
            fn,
            RetryPolicy(max_attempts=3),
            retryable=lambda exc: not isinstance(exc, ValueError),
            sleep=no_sleep,
        )
    assert fn.calls == 1


async def test_circuit_open_error_is_never_retried():
    fn = Flaky(failures=5, exc=CircuitOpenError("cart"))
    with pytest.raises(CircuitOpenError):
        await with_retry(fn, RetryPolicy(max_attempts=5), sleep=no_sleep)
    assert fn.calls == 1


async def test_breaker_opens_after_consecutive_failures():
    breaker = CircuitBreaker("cart", failure_threshold=3, reset_timeout=30.0, clock=Clock())
    failing = Flaky(failures=100)

    for _ in range(3):
        with pytest.raises(ConnectionError):
            await breaker.call(failing)
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.call(failing)
    assert failing.calls == 3


async def test_success_resets_failure_count():
    breaker = CircuitBreaker("cart", failure_threshold=3, clock=Clock())
    fn = Flaky(failures=2)
    for _ in range(2):
        with pytest.raises(ConnectionError):
            await breaker.call(fn)
    assert await breaker.call(fn) == "ok"
    assert breaker.failure_count == 0
    assert breaker.state is CircuitState.CLOSED


async def test_half_open_trial_closes_circuit_on_success():
    clock = Clock()
    breaker = CircuitBreaker("cart", failure_threshold=1, reset_timeout=10.0, clock=clock)
    fn = Flaky(failures=1)

    with pytest.raises(ConnectionError):
        await breaker.call(fn)
    assert breaker.state is CircuitState.OPEN

    clock.now = 10.0
    assert await breaker.call(fn) == "ok"
    assert breaker.state is CircuitState.CLOSED


async def test_half_open_trial_failure_reopens_circuit():
    clock = Clock()
    breaker = CircuitBreaker("cart", failure_threshold=1, reset_timeout=10.0, clock=clock)
    fn = Flaky(failures=2)

    with pytest.raises(ConnectionError):
        await breaker.call(fn)
    clock.now = 11.0
    with pytest.raises(ConnectionError):
        await breaker.call(fn)
    assert breaker.state is CircuitState.OPEN

    clock.now = 15.0
    with pytest.raises(CircuitOpenError):
        await breaker.call(fn)
