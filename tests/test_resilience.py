from __future__ import annotations

import asyncio

import pytest

from bot.errors import (
    ApplicationFailureError,
    AuthFailureError,
    CircuitOpenError,
    RetryExhaustedError,
    TransportFailureError,
)
from bot.resilience import CircuitBreaker, backoff_delay, retry_async
from conftest import FakeClock


def test_backoff_delay_doubles_and_caps():
    assert backoff_delay(1, 0.5) == 0.5
    assert backoff_delay(2, 0.5) == 1.0
    assert backoff_delay(3, 0.5) == 2.0
    assert backoff_delay(10, 5, cap=300) == 300
    assert backoff_delay(0, 5) == 0.0


def test_breaker_opens_after_threshold_and_rejects():
    clock = FakeClock()
    breaker = CircuitBreaker("backend", threshold=3, reset_timeout=30, clock=clock)

    for _ in range(2):
        breaker.before_call()
        breaker.record_failure()
    assert not breaker.is_open()

    breaker.before_call()
    breaker.record_failure()
    assert breaker.is_open()

    with pytest.raises(CircuitOpenError):
        breaker.before_call()


def test_breaker_admits_single_trial_after_cooldown():
    clock = FakeClock()
    breaker = CircuitBreaker("backend", threshold=1, reset_timeout=30, clock=clock)
    breaker.before_call()
    breaker.record_failure()

    clock.advance(31)
    breaker.before_call()  # trial admitted
    with pytest.raises(CircuitOpenError):
        breaker.before_call()

    breaker.record_success()
    assert breaker.failures == 0
    assert not breaker.is_open()
    breaker.before_call()


def test_failed_trial_rearms_cooldown():
    clock = FakeClock()
    breaker = CircuitBreaker("backend", threshold=1, reset_timeout=30, clock=clock)
    breaker.record_failure()
    clock.advance(31)

    breaker.before_call()
    breaker.record_failure()

    assert breaker.is_open()
    clock.advance(10)
    with pytest.raises(CircuitOpenError):
        breaker.before_call()


def test_release_ends_trial_without_changing_counters():
    clock = FakeClock()
    breaker = CircuitBreaker("backend", threshold=1, reset_timeout=30, clock=clock)
    breaker.record_failure()
    clock.advance(31)

    breaker.before_call()
    breaker.release()

    assert breaker.failures == 1
    breaker.before_call()


def test_retry_returns_first_success_and_backs_off():
    delays: list[float] = []
    attempts = {"n": 0}

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    async def _op() -> str:
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise TransportFailureError("boom")
        return "ok"

    result = asyncio.run(retry_async(_op, max_attempts=3, base_delay=0.5, sleep=_sleep))

    assert result == "ok"
    assert attempts["n"] == 3
    assert delays == [0.5, 1.0]


def test_retry_exhausted_wraps_last_error():
    async def _sleep(delay: float) -> None:
        return None

    async def _op() -> str:
        raise ApplicationFailureError(status=500, body="nope")

    with pytest.raises(RetryExhaustedError) as excinfo:
        asyncio.run(retry_async(_op, max_attempts=2, base_delay=0.1, sleep=_sleep))

    assert excinfo.value.attempts == 2
    assert isinstance(excinfo.value.last_error, ApplicationFailureError)
    assert excinfo.value.last_error.status == 500


@pytest.mark.parametrize("error", [AuthFailureError("bad token"), CircuitOpenError()])
def test_retry_does_not_retry_auth_or_open_circuit(error):
    attempts = {"n": 0}

    async def _op() -> str:
        attempts["n"] += 1
        raise error

    with pytest.raises(type(error)):
        asyncio.run(retry_async(_op, max_attempts=5, base_delay=0))

    assert attempts["n"] == 1


def test_retry_propagates_non_bridge_errors():
    async def _op() -> str:
        raise KeyError("unexpected")

    with pytest.raises(KeyError):
        asyncio.run(retry_async(_op, max_attempts=3, base_delay=0))
