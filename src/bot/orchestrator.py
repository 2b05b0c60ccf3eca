"""Main orchestration class tying Twilio callbacks to backend sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from bot.actions import (
    APOLOGY_MESSAGE,
    DEFAULT_GREETING,
    REPROMPT_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    CallAction,
    action_for_reply,
)
from bot.errors import BridgeError, ConversationConflictError, SessionNotFoundError
from bot.generation import GenerationCoordinator, PartialOutcome
from bot.registry import SessionRegistry
from bot.session import GenerationState, Session
from bot.streaming import StreamingBridge
from config.settings import Settings
from integrations.backend_client import BackendClient
from integrations.twiml import TwimlRenderer
from integrations.twilio_client import TelephonyClient

LOGGER = logging.getLogger(__name__)

ENDED_CALL_STATUSES = frozenset({"completed", "busy", "no-answer", "canceled", "failed"})


@dataclass(frozen=True)
class OutboundCall:
    session_id: str
    call_sid: str


class CallOrchestrator:
    """High-level coordinator for the call bridge.

    Owns the session registry, the generation state machine and the backend
    stream bridge, and runs their background maintenance tasks.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        backend: BackendClient,
        telephony: TelephonyClient,
        registry: SessionRegistry | None = None,
        bridge: StreamingBridge | None = None,
        renderer: TwimlRenderer | None = None,
    ) -> None:
        self._settings = settings
        self._backend = backend
        self._telephony = telephony
        self.registry = registry or SessionRegistry(queue_capacity=settings.session_queue_capacity)
        if bridge is None and settings.backend_ws_url:
            bridge = StreamingBridge(
                self.registry.enqueue,
                heartbeat_interval=settings.ws_heartbeat_interval_seconds,
                backoff_base=settings.ws_backoff_base_seconds,
                backoff_max=settings.ws_backoff_max_seconds,
            )
        self.bridge = bridge
        self.renderer = renderer or TwimlRenderer(settings)
        self.generation = GenerationCoordinator(
            self.registry,
            backend,
            partial_processing=settings.partial_processing,
        )
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        settings = self._settings
        self._tasks.append(
            asyncio.create_task(
                self.registry.run_sweeper(
                    interval=settings.session_cleanup_interval_minutes * 60,
                    max_age=settings.session_max_age_minutes * 60,
                    on_expired=self._on_expired,
                )
            )
        )
        LOGGER.info("Session cleanup task started")
        if self.bridge is not None:
            self._tasks.append(asyncio.create_task(self.bridge.run_connection_checker(settings.ws_check_interval_seconds)))
            LOGGER.info("Backend stream connection checker started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self.bridge is not None:
            await self.bridge.close_all()
        await self._backend.aclose()

    # Inbound call setup

    async def handle_call_started(self, call_sid: str, from_number: str) -> CallAction:
        try:
            session_id = await self.registry.create(
                call_sid,
                user_id=call_sid,
                name=from_number,
                direction="inbound",
            )
        except ConversationConflictError:
            snapshot = await self.registry.get_by_conversation(call_sid)
            LOGGER.debug("Call %s already has session %s", call_sid, snapshot.session_id)
            return CallAction.speak(snapshot.greeting or DEFAULT_GREETING)

        LOGGER.debug("Incoming call from %s with SID %s", from_number, call_sid)
        try:
            reply = await self._backend.open_session_with_retry(
                user_id=call_sid,
                name=from_number,
                bot_type="twilio",
                conversation_id=call_sid,
            )
        except BridgeError as exc:
            LOGGER.error("Failed to initialize session with backend: %s", exc)
            await self._discard(session_id)
            return CallAction.hangup(APOLOGY_MESSAGE)

        greeting = reply.greeting or DEFAULT_GREETING
        backend_session_id = reply.session.session_id
        try:
            await self.registry.with_mutable(
                session_id,
                lambda session: _bind_backend(session, backend_session_id, greeting),
            )
        except SessionNotFoundError:
            # The call ended while the backend session was being opened.
            LOGGER.info("Call %s ended during setup; closing backend session %s", call_sid, backend_session_id)
            self.generation.forget(session_id)
            try:
                await self._backend.close_session_with_retry(backend_session_id, status="canceled")
            except BridgeError as exc:
                LOGGER.error("Failed to close session with backend: %s", exc)
            return CallAction.hangup(SESSION_EXPIRED_MESSAGE)
        await self._connect_stream(session_id, backend_session_id)
        LOGGER.debug("Created new session %s for call %s", session_id, call_sid)
        return CallAction.speak(greeting)

    # Outbound call setup

    async def make_call(self, to_number: str, env_info: dict[str, Any] | None = None) -> OutboundCall:
        if not self._settings.twilio_from_number:
            raise ValueError("Twilio from-number is not configured")

        session_id = await self.registry.create(
            None,
            user_id=to_number,
            name=to_number,
            direction="outbound",
        )
        try:
            reply = await self._backend.open_session_with_retry(
                user_id=to_number,
                name=to_number,
                bot_type="twilio",
                kwargs={"env_info": env_info} if env_info else None,
            )
            backend_session_id = reply.session.session_id
            greeting = reply.greeting or DEFAULT_GREETING
            await self.registry.with_mutable(
                session_id,
                lambda session: _bind_backend(session, backend_session_id, greeting),
            )
            await self._connect_stream(session_id, backend_session_id)

            call = await self._telephony.create_call_with_retry(
                to=to_number,
                from_=self._settings.twilio_from_number,
                twiml=self.renderer.render(CallAction.speak("")),
                status_callback=self.renderer.url("status_callback"),
            )
            await self.registry.attach_conversation(session_id, call.sid)
        except BaseException:
            session = await self.registry.remove(session_id)
            if session is not None:
                await self._teardown(session, "failed")
            raise

        try:
            await self._backend.update_session(backend_session_id, conversation_id=call.sid)
        except BridgeError as exc:
            LOGGER.warning("Failed to attach call %s to backend session %s: %s", call.sid, backend_session_id, exc)
        return OutboundCall(session_id=session_id, call_sid=call.sid)

    # Status callbacks

    async def handle_call_status(self, call_sid: str, call_status: str) -> None:
        LOGGER.debug("Call status update for %s: %s", call_sid, call_status)
        if call_status == "in-progress":
            await self._push_greeting(call_sid)
        elif call_status in ENDED_CALL_STATUSES:
            session_id = await self.registry.session_id_for(call_sid)
            if session_id is None:
                return
            session = await self.registry.remove(session_id)
            if session is not None:
                LOGGER.debug("Removed session %s for ended call %s", session_id, call_sid)
                await self._teardown(session, call_status)

    async def _push_greeting(self, call_sid: str) -> None:
        try:
            snapshot = await self.registry.get_by_conversation(call_sid)
        except SessionNotFoundError:
            return
        if snapshot.direction != "outbound" or not snapshot.greeting:
            return
        twiml = self.renderer.render(CallAction.speak(snapshot.greeting))
        await self._telephony.update_call_with_retry(call_sid, twiml)

    # Speech

    async def handle_final_transcript(self, call_sid: str, speech: str) -> CallAction:
        session_id = await self.registry.session_id_for(call_sid)
        if session_id is None:
            return CallAction.hangup(SESSION_EXPIRED_MESSAGE)
        if not speech.strip():
            return CallAction.speak(REPROMPT_MESSAGE)

        try:
            result = await self.generation.on_final(session_id, speech)
        except SessionNotFoundError:
            return CallAction.hangup(SESSION_EXPIRED_MESSAGE)
        except BridgeError as exc:
            LOGGER.error("Turn generation failed for call %s: %s", call_sid, exc)
            return CallAction.hangup(APOLOGY_MESSAGE)

        if result.reply is None:
            return CallAction.hangup(SESSION_EXPIRED_MESSAGE)
        action = action_for_reply(result.reply, streaming=self._has_stream(session_id))
        if result.ended and not action.ends_call:
            return CallAction.hangup(action.text)
        return action

    async def handle_partial_transcript(self, call_sid: str, speech: str) -> PartialOutcome | None:
        session_id = await self.registry.session_id_for(call_sid)
        if session_id is None:
            return None
        try:
            return await self.generation.on_partial(session_id, speech)
        except SessionNotFoundError:
            return None

    async def handle_queue_poll(self, call_sid: str) -> CallAction:
        session_id = await self.registry.session_id_for(call_sid)
        if session_id is None:
            return CallAction.hangup(SESSION_EXPIRED_MESSAGE)
        try:
            drained = await self.registry.drain(session_id, timeout=self._settings.queue_poll_timeout_seconds)
        except SessionNotFoundError:
            return CallAction.hangup(SESSION_EXPIRED_MESSAGE)

        if drained.end_of_conversation:
            try:
                await self.registry.with_mutable(session_id, _mark_ending)
            except SessionNotFoundError:
                pass
            return CallAction.hangup(drained.text)
        if drained.end_of_stream:
            return CallAction.speak(drained.text)
        return CallAction.poll_queue(drained.text)

    # Health

    async def backend_healthy(self) -> bool:
        return await self._backend.health_check()

    # Lifecycle helpers

    async def _connect_stream(self, session_id: str, backend_session_id: str) -> None:
        if self.bridge is None or not self._settings.backend_ws_url:
            return
        endpoint = f"{self._settings.backend_ws_url}?{urlencode({'session_id': backend_session_id})}"
        await self.bridge.get_or_create(session_id, endpoint)

    def _has_stream(self, session_id: str) -> bool:
        return self.bridge is not None and self.bridge.get(session_id) is not None

    async def _discard(self, session_id: str) -> None:
        await self.registry.remove(session_id)
        self.generation.forget(session_id)

    async def _on_expired(self, sessions: list[Session]) -> None:
        for session in sessions:
            await self._teardown(session, "expired")

    async def _teardown(self, session: Session, status: str) -> None:
        self.generation.forget(session.session_id)
        if self.bridge is not None:
            await self.bridge.remove(session.session_id)
        pending = session.queue.qsize()
        if pending:
            LOGGER.debug("Discarding %d queued messages for session %s", pending, session.session_id)
        if session.backend_session_id is None:
            return
        try:
            await self._backend.close_session_with_retry(session.backend_session_id, status=status)
        except BridgeError as exc:
            LOGGER.error("Failed to close session with backend: %s", exc)


def _bind_backend(session: Session, backend_session_id: str, greeting: str) -> None:
    session.backend_session_id = backend_session_id
    session.metadata["initialization_response"] = {"greeting": greeting}


def _mark_ending(session: Session) -> None:
    if not session.session_ending:
        session.transition(GenerationState.ENDED)
