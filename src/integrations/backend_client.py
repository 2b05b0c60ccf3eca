"""HTTP client for the conversational backend's session API."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from bot.errors import ApplicationFailureError, AuthFailureError, BridgeError, TransportFailureError
from bot.resilience import CircuitBreaker, retry_async
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


class BackendReply(BaseModel):
    """Response body of a backend call plus its metadata object."""

    response: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ends(self) -> bool:
        return bool(self.metadata.get("ends", False))

    @property
    def greeting(self) -> str | None:
        init = self.metadata.get("initialization_response") or {}
        greeting = init.get("greeting") if isinstance(init, dict) else None
        return greeting if isinstance(greeting, str) and greeting else None


class SessionInfo(BaseModel):
    session_id: str


class OpenSessionReply(BaseModel):
    session: SessionInfo
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def greeting(self) -> str | None:
        return BackendReply(metadata=self.metadata).greeting


class BackendClient:
    """Async client for the backend REST contract.

    Every request passes through the circuit breaker (when enabled). Auth
    failures do not count against the breaker; transport and application
    failures do.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._token = settings.backend_authorization_token
        if breaker is None and settings.circuit_breaker_enabled:
            breaker = CircuitBreaker(
                "backend",
                threshold=settings.circuit_breaker_threshold,
                reset_timeout=settings.circuit_breaker_reset_seconds,
            )
        self.breaker = breaker
        self._client = httpx.AsyncClient(
            base_url=settings.backend_url,
            timeout=settings.backend_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def open_session(
        self,
        *,
        user_id: str,
        name: str,
        bot_type: str = "twilio",
        conversation_id: str | None = None,
        args: list[str] | None = None,
        kwargs: dict[str, Any] | None = None,
    ) -> OpenSessionReply:
        payload = {
            "user_id": user_id,
            "name": name,
            "type": bot_type,
            "conversation_id": conversation_id,
            "args": args or [],
            "kwargs": kwargs or {},
        }
        data = await self._request("POST", "/session", json=payload)
        try:
            reply = OpenSessionReply.model_validate(data)
        except ValidationError as exc:
            raise ApplicationFailureError(f"Malformed open-session reply: {exc}") from exc
        LOGGER.info("Opened backend session %s", reply.session.session_id)
        return reply

    async def update_session(self, session_id: str, *, conversation_id: str | None = None) -> BackendReply:
        payload = {"conversation_id": conversation_id} if conversation_id else {}
        return self._reply(await self._request("PUT", f"/session/{session_id}", json=payload))

    async def close_session(self, session_id: str, *, status: str | None = None) -> None:
        params = {"status": status} if status else None
        LOGGER.debug("Closing backend session %s with status %s", session_id, status)
        await self._request("DELETE", f"/session/{session_id}", params=params)
        LOGGER.info("Closed backend session %s", session_id)

    async def run(self, session_id: str, message: str, kwargs: dict[str, Any] | None = None) -> BackendReply:
        payload = {"message": message, "kwargs": kwargs or {}}
        return self._reply(await self._request("POST", f"/session/{session_id}/run", json=payload))

    async def start(self, session_id: str, message: str) -> BackendReply:
        payload = {"message": message, "kwargs": {}}
        return self._reply(await self._request("POST", f"/session/{session_id}/start", json=payload))

    async def commit(self, session_id: str) -> BackendReply:
        return self._reply(await self._request("POST", f"/session/{session_id}/commit", json={}))

    async def rollback(self, session_id: str) -> BackendReply:
        return self._reply(await self._request("POST", f"/session/{session_id}/rollback", json={}))

    async def run_command(self, command: str, args: list[str] | None = None, *, session_id: str | None = None) -> BackendReply:
        payload = {"command": command, "args": args or []}
        path = f"/session/{session_id}/command" if session_id else "/command"
        return self._reply(await self._request("POST", path, json=payload))

    async def health_check(self) -> bool:
        try:
            await self.run_command("HEALTH_CHECK")
        except BridgeError as exc:
            LOGGER.warning("Backend health check failed: %s", exc)
            return False
        return True

    async def run_with_retry(self, session_id: str, message: str, kwargs: dict[str, Any] | None = None) -> BackendReply:
        return await retry_async(
            lambda: self.run(session_id, message, kwargs),
            max_attempts=self._settings.retry_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
            description=f"backend run for session {session_id}",
        )

    async def open_session_with_retry(self, **kwargs: Any) -> OpenSessionReply:
        return await retry_async(
            lambda: self.open_session(**kwargs),
            max_attempts=self._settings.retry_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
            description="backend open-session",
        )

    async def close_session_with_retry(self, session_id: str, *, status: str | None = None) -> None:
        await retry_async(
            lambda: self.close_session(session_id, status=status),
            max_attempts=self._settings.retry_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
            description=f"backend close-session {session_id}",
        )

    @staticmethod
    def _reply(data: Any) -> BackendReply:
        if not isinstance(data, dict):
            return BackendReply()
        try:
            return BackendReply.model_validate(data)
        except ValidationError as exc:
            raise ApplicationFailureError(f"Malformed backend reply: {exc}") from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        if self.breaker is not None:
            self.breaker.before_call()

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            response = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as exc:
            self._record_failure()
            LOGGER.error("Backend %s %s failed: %s", method, path, exc)
            raise TransportFailureError(str(exc)) from exc
        except BaseException:
            # Cancellation or a client bug must not leave a half-open trial outstanding.
            self._release()
            raise

        if response.status_code in (401, 403):
            self._release()
            raise AuthFailureError(f"Backend rejected credentials ({response.status_code})")
        if response.is_error:
            self._record_failure()
            LOGGER.error("Backend %s %s returned %s: %s", method, path, response.status_code, response.text)
            raise ApplicationFailureError(status=response.status_code, body=response.text)

        if self.breaker is not None:
            self.breaker.record_success()

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ApplicationFailureError(f"Backend returned invalid JSON for {method} {path}") from exc

    def _record_failure(self) -> None:
        if self.breaker is not None:
            self.breaker.record_failure()

    def _release(self) -> None:
        if self.breaker is not None:
            self.breaker.release()
