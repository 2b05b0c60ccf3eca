"""Speculative ("barge-ahead") generation driven by partial and final transcripts.

A sentence-complete partial transcript starts backend generation before the
caller has finished speaking. When the final transcript arrives it either
matches the speculation, in which case the final path waits for that result
and commits it, or it does not, in which case the speculation is rolled back
and a full run is issued.

All generation calls for one session (start, run, commit, rollback) are
serialized by a per-session lock, so at most one is outstanding at a time. This
lock is separate from the registry lock and may be held across network I/O.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from bot.errors import BridgeError, SessionNotFoundError
from bot.registry import SessionRegistry
from bot.session import GenerationState, Session, ends_with_sentence_punctuation
from integrations.backend_client import BackendReply

LOGGER = logging.getLogger(__name__)


class GenerationBackend(Protocol):
    async def start(self, session_id: str, message: str) -> BackendReply: ...

    async def run_with_retry(self, session_id: str, message: str) -> BackendReply: ...

    async def commit(self, session_id: str) -> BackendReply: ...

    async def rollback(self, session_id: str) -> BackendReply: ...


class PartialOutcome(str, Enum):
    DISABLED = "disabled"
    EMPTY = "empty"
    ENDED = "ended"
    BUSY = "busy"
    INCOMPLETE = "incomplete"
    DUPLICATE = "duplicate"
    STARTED = "started"


@dataclass
class _Speculation:
    generation_id: int
    transcript: str
    task: asyncio.Task


@dataclass
class _GenerationSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    speculation: _Speculation | None = None
    uncommitted: bool = False


@dataclass(frozen=True)
class TurnResult:
    reply: BackendReply | None
    ended: bool
    speculative: bool = False

    @classmethod
    def already_ended(cls) -> TurnResult:
        return cls(reply=None, ended=True)


class GenerationCoordinator:
    """Per-session state machine for speculative and final generation."""

    def __init__(self, registry: SessionRegistry, backend: GenerationBackend, *, partial_processing: bool = True) -> None:
        self._registry = registry
        self._backend = backend
        self._partial_processing = partial_processing
        self._slots: dict[str, _GenerationSlot] = {}

    def _slot(self, session_id: str) -> _GenerationSlot:
        slot = self._slots.get(session_id)
        if slot is None:
            slot = self._slots[session_id] = _GenerationSlot()
        return slot

    def forget(self, session_id: str) -> None:
        """Drop bookkeeping for a destroyed session. In-flight work finishes on its own."""

        self._slots.pop(session_id, None)

    def speculation_task(self, session_id: str) -> asyncio.Task | None:
        slot = self._slots.get(session_id)
        if slot is None or slot.speculation is None:
            return None
        return slot.speculation.task

    async def on_partial(self, session_id: str, transcript: str) -> PartialOutcome:
        if not self._partial_processing:
            return PartialOutcome.DISABLED
        text = transcript.strip()
        if not text:
            return PartialOutcome.EMPTY
        complete = ends_with_sentence_punctuation(text)

        def _apply(session: Session) -> tuple[PartialOutcome, int, str | None]:
            if session.session_ending:
                return PartialOutcome.ENDED, 0, None
            if session.run_in_progress:
                return PartialOutcome.BUSY, 0, None
            if not complete:
                if session.state in (GenerationState.IDLE, GenerationState.SPEECH_PENDING):
                    session.transition(GenerationState.SPEECH_PENDING)
                return PartialOutcome.INCOMPLETE, 0, None
            if session.generation_in_progress and session.unstable_transcript_matches(text):
                return PartialOutcome.DUPLICATE, 0, None
            session.transition(GenerationState.GENERATING)
            session.last_unstable_transcript = text
            session.generation_id += 1
            return PartialOutcome.STARTED, session.generation_id, session.backend_session_id

        outcome, generation_id, backend_session_id = await self._registry.with_mutable(session_id, _apply)
        if outcome is not PartialOutcome.STARTED:
            LOGGER.debug("Partial transcript for session %s: %s", session_id, outcome.value)
            return outcome

        slot = self._slot(session_id)
        task = asyncio.create_task(
            self._speculate(slot, session_id, backend_session_id or session_id, generation_id, text)
        )
        slot.speculation = _Speculation(generation_id=generation_id, transcript=text, task=task)
        LOGGER.debug("Started speculative generation %d for session %s", generation_id, session_id)
        return outcome

    async def _speculate(
        self,
        slot: _GenerationSlot,
        session_id: str,
        backend_session_id: str,
        generation_id: int,
        text: str,
    ) -> BackendReply | None:
        async with slot.lock:
            if not await self._is_current(session_id, generation_id):
                LOGGER.debug("Skipping superseded speculation %d for session %s", generation_id, session_id)
                return None
            await self._rollback_locked(slot, backend_session_id)
            try:
                reply = await self._backend.start(backend_session_id, text)
            except BridgeError as exc:
                LOGGER.warning("Speculative start failed for session %s: %s", session_id, exc)
                await self._reset_if_current(session_id, generation_id)
                return None
            # State stays GENERATING so a matching final transcript can reuse this reply; on_final resets it.
            slot.uncommitted = True
            return reply

    async def on_final(self, session_id: str, transcript: str) -> TurnResult:
        """Resolve a final transcript into a backend reply.

        Raises :class:`BridgeError` when the backend cannot produce a reply; the
        session is returned to idle first.
        """

        text = transcript.strip()

        def _begin(session: Session) -> tuple[str, int, str | None]:
            if session.session_ending:
                return "ended", 0, None
            reuse = session.generation_in_progress and session.unstable_transcript_matches(text)
            session.run_in_progress = True
            if reuse:
                return "reuse", session.generation_id, session.backend_session_id
            session.transition(GenerationState.GENERATING)
            session.last_unstable_transcript = None
            session.generation_id += 1
            return "run", session.generation_id, session.backend_session_id

        mode, generation_id, backend_session_id = await self._registry.with_mutable(session_id, _begin)
        if mode == "ended":
            return TurnResult.already_ended()
        backend_session_id = backend_session_id or session_id

        slot = self._slot(session_id)
        try:
            if mode == "reuse":
                reply = await self._reuse_speculation(session_id, slot, generation_id, backend_session_id)
                if reply is not None:
                    return await self._finish(session_id, reply, speculative=True)
                if await self._registry.with_mutable(session_id, self._restart_generation) is None:
                    return TurnResult.already_ended()

            async with slot.lock:
                await self._rollback_locked(slot, backend_session_id)
                reply = await self._backend.run_with_retry(backend_session_id, text)
        except BaseException:
            await self._abort(session_id)
            raise
        return await self._finish(session_id, reply, speculative=False)

    async def _reuse_speculation(
        self,
        session_id: str,
        slot: _GenerationSlot,
        generation_id: int,
        backend_session_id: str,
    ) -> BackendReply | None:
        speculation = slot.speculation
        if speculation is None or speculation.generation_id != generation_id:
            return None
        LOGGER.debug("Final transcript matches speculation %d for session %s", generation_id, session_id)
        reply = await asyncio.shield(speculation.task)
        if reply is None:
            return None
        async with slot.lock:
            if slot.uncommitted:
                try:
                    await self._backend.commit(backend_session_id)
                except BridgeError as exc:
                    LOGGER.error("Commit failed for session %s: %s", session_id, exc)
                slot.uncommitted = False
        return reply

    @staticmethod
    def _restart_generation(session: Session) -> int | None:
        if session.session_ending:
            session.run_in_progress = False
            return None
        session.transition(GenerationState.GENERATING)
        session.last_unstable_transcript = None
        session.generation_id += 1
        return session.generation_id

    async def _rollback_locked(self, slot: _GenerationSlot, backend_session_id: str) -> None:
        if not slot.uncommitted:
            return
        slot.uncommitted = False
        try:
            await self._backend.rollback(backend_session_id)
        except BridgeError as exc:
            LOGGER.warning("Rollback failed for backend session %s: %s", backend_session_id, exc)

    async def _finish(self, session_id: str, reply: BackendReply, *, speculative: bool) -> TurnResult:
        def _apply(session: Session) -> bool:
            session.run_in_progress = False
            session.last_unstable_transcript = None
            if reply.ends and not session.session_ending:
                session.transition(GenerationState.ENDED)
            elif session.generation_in_progress:
                session.transition(GenerationState.IDLE)
            return session.session_ending

        try:
            ended = await self._registry.with_mutable(session_id, _apply)
        except SessionNotFoundError:
            ended = True
        slot = self._slots.get(session_id)
        if slot is not None:
            slot.speculation = None
        return TurnResult(reply=reply, ended=ended, speculative=speculative)

    async def _abort(self, session_id: str) -> None:
        def _apply(session: Session) -> None:
            session.run_in_progress = False
            session.last_unstable_transcript = None
            if session.generation_in_progress:
                session.transition(GenerationState.IDLE)

        try:
            await self._registry.with_mutable(session_id, _apply)
        except SessionNotFoundError:
            pass

    async def _is_current(self, session_id: str, generation_id: int) -> bool:
        try:
            return await self._registry.with_mutable(
                session_id,
                lambda session: session.generation_in_progress and session.generation_id == generation_id,
            )
        except SessionNotFoundError:
            return False

    async def _reset_if_current(self, session_id: str, generation_id: int) -> None:
        def _apply(session: Session) -> None:
            if session.generation_id != generation_id or session.run_in_progress:
                return
            if session.generation_in_progress:
                session.transition(GenerationState.IDLE)
            session.last_unstable_transcript = None

        try:
            await self._registry.with_mutable(session_id, _apply)
        except SessionNotFoundError:
            pass
