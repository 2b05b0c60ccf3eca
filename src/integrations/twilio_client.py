from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from twilio.base.exceptions import TwilioException, TwilioRestException

from bot.errors import ApplicationFailureError, AuthFailureError, TransportFailureError
from bot.resilience import CircuitBreaker, retry_async
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_CALLBACK_EVENTS = ["initiated", "answered", "completed", "busy", "no-answer", "canceled", "failed"]


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    region: str | None = None
    edge: str | None = None


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ValueError("Twilio credentials are not configured")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        region=settings.twilio_region or None,
        edge=settings.twilio_edge or None,
    )


def build_twilio_client(cfg: TwilioConfig | None = None):
    from twilio.rest import Client

    cfg = cfg or get_twilio_config()
    return Client(cfg.account_sid, cfg.auth_token, region=cfg.region, edge=cfg.edge)


@dataclass(frozen=True)
class CallInfo:
    sid: str
    status: str


class TelephonyClient:
    """Async facade over the blocking Twilio SDK.

    SDK calls run in a worker thread; failures are mapped onto the shared
    error taxonomy and counted by a Twilio-specific circuit breaker.
    """

    def __init__(
        self,
        client_factory: Callable[[], Any] = build_twilio_client,
        settings: Settings | None = None,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._client_factory = client_factory
        self._client: Any = None
        if breaker is None and settings.circuit_breaker_enabled:
            breaker = CircuitBreaker(
                "twilio",
                threshold=settings.circuit_breaker_threshold,
                reset_timeout=settings.circuit_breaker_reset_seconds,
            )
        self.breaker = breaker

    def _sdk(self) -> Any:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def create_call(self, *, to: str, from_: str, twiml: str, status_callback: str) -> CallInfo:
        LOGGER.debug("Creating call to %s from %s", to, from_)

        def _create() -> CallInfo:
            call = self._sdk().calls.create(
                to=to,
                from_=from_,
                twiml=twiml,
                status_callback=status_callback,
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
                timeout=600,
            )
            return CallInfo(sid=str(call.sid), status=str(getattr(call, "status", "") or ""))

        call = await self._guarded(_create, f"create call to {to}")
        LOGGER.info("Created call with SID: %s", call.sid)
        return call

    async def update_call(self, call_sid: str, twiml: str) -> None:
        LOGGER.debug("Updating call %s", call_sid)
        await self._guarded(lambda: self._sdk().calls(call_sid).update(twiml=twiml), f"update call {call_sid}")

    async def create_call_with_retry(self, *, to: str, from_: str, twiml: str, status_callback: str) -> CallInfo:
        return await retry_async(
            lambda: self.create_call(to=to, from_=from_, twiml=twiml, status_callback=status_callback),
            max_attempts=self._settings.retry_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
            description=f"Twilio call creation to {to}",
        )

    async def update_call_with_retry(self, call_sid: str, twiml: str) -> None:
        await retry_async(
            lambda: self.update_call(call_sid, twiml),
            max_attempts=self._settings.retry_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
            description=f"Twilio call update {call_sid}",
        )

    async def _guarded(self, fn: Callable[[], T], description: str) -> T:
        if self.breaker is not None:
            self.breaker.before_call()
        try:
            result = await asyncio.to_thread(fn)
        except TwilioRestException as exc:
            if exc.status in (401, 403):
                self._release()
                raise AuthFailureError(f"Twilio rejected credentials: {exc.msg}") from exc
            self._record_failure()
            LOGGER.error("Failed to %s: %s", description, exc)
            raise ApplicationFailureError(status=exc.status, body=str(exc.msg)) from exc
        except (TwilioException, OSError) as exc:
            self._record_failure()
            LOGGER.error("Failed to %s: %s", description, exc)
            raise TransportFailureError(str(exc)) from exc
        except BaseException:
            self._release()
            raise
        if self.breaker is not None:
            self.breaker.record_success()
        return result

    def _record_failure(self) -> None:
        if self.breaker is not None:
            self.breaker.record_failure()

    def _release(self) -> None:
        if self.breaker is not None:
            self.breaker.release()
