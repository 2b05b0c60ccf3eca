"""Circuit breaker and retry helpers shared by the backend and Twilio clients."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from bot.errors import AuthFailureError, BridgeError, CircuitOpenError, RetryExhaustedError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base: float, cap: float | None = None) -> float:
    """Delay before the given retry (1-based): ``base * 2**(attempt-1)``, optionally capped."""

    if attempt <= 0:
        return 0.0
    delay = base * (2 ** (attempt - 1))
    if cap is not None:
        delay = min(cap, delay)
    return delay


class CircuitBreaker:
    """Consecutive-failure breaker for a single remote target.

    The breaker is open while ``failures >= threshold`` and the last failure is
    younger than ``reset_timeout``. Once the cooldown has elapsed exactly one
    trial call is admitted; its outcome either closes or re-arms the breaker.
    """

    def __init__(self, name: str, *, threshold: int = 5, reset_timeout: float = 30.0, clock: Clock = time.monotonic) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.name = name
        self._threshold = threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._last_failure: float | None = None
        self._trial_in_flight = False

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def last_failure(self) -> float | None:
        return self._last_failure

    def is_open(self) -> bool:
        with self._lock:
            return self._is_open_locked()

    def _is_open_locked(self) -> bool:
        if self._failures < self._threshold:
            return False
        if self._clock() - (self._last_failure or 0.0) < self._reset_timeout:
            return True
        return self._trial_in_flight

    def before_call(self) -> None:
        """Admit a call or raise :class:`CircuitOpenError`."""

        with self._lock:
            if self._is_open_locked():
                raise CircuitOpenError(f"Circuit breaker '{self.name}' is open")
            if self._failures >= self._threshold:
                self._trial_in_flight = True
                LOGGER.info("Circuit breaker '%s' admitting trial call", self.name)

    def record_success(self) -> None:
        with self._lock:
            if self._failures:
                LOGGER.info("Circuit breaker '%s' closed after %d failures", self.name, self._failures)
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            self._trial_in_flight = False
            if self._failures == self._threshold:
                LOGGER.warning("Circuit breaker '%s' opened after %d failures", self.name, self._failures)

    def release(self) -> None:
        """End an admitted call whose outcome says nothing about the target's health."""

        with self._lock:
            self._trial_in_flight = False


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    description: str = "call",
    sleep: Sleeper = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``max_attempts`` times with exponential backoff.

    Authentication failures and open circuits are raised immediately. Any other
    :class:`BridgeError` is retried; the last one is wrapped in
    :class:`RetryExhaustedError`.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except (AuthFailureError, CircuitOpenError):
            raise
        except BridgeError as exc:
            if attempt >= max_attempts:
                LOGGER.error("%s failed after %d attempts: %s", description, attempt, exc)
                raise RetryExhaustedError(exc, attempt) from exc
            delay = backoff_delay(attempt, base_delay)
            LOGGER.debug(
                "Retrying %s, attempt %d/%d after %.3fs: %s",
                description,
                attempt + 1,
                max_attempts,
                delay,
                exc,
            )
            await sleep(delay)
