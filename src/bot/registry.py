"""Concurrent registry of in-flight call sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from bot.errors import SessionNotFoundError
from bot.session import ConversationIndex, MessageKind, QueuedMessage, Session, SessionSnapshot

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ExpiredCallback = Callable[[list[Session]], Awaitable[None]]


@dataclass
class QueueDrain:
    """Result of draining a session's inbound queue."""

    chunks: list[str] = field(default_factory=list)
    end_of_stream: bool = False
    end_of_conversation: bool = False

    @property
    def text(self) -> str:
        return "".join(self.chunks).strip()

    @property
    def terminal(self) -> bool:
        return self.end_of_stream or self.end_of_conversation


class SessionRegistry:
    """Owns every :class:`Session` and the conversation index.

    All map access goes through one ``asyncio.Lock``. Critical sections are
    pure in-memory work and never await, so the lock is never held across
    network I/O. Per-session queues are used outside the lock.
    """

    def __init__(self, *, queue_capacity: int = 100, clock: Callable[[], float] = time.time) -> None:
        self._queue_capacity = queue_capacity
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        self._index = ConversationIndex()

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self, conversation_id: str | None = None, **fields: Any) -> str:
        async with self._lock:
            session = Session.new(
                now=self._clock(),
                queue_capacity=self._queue_capacity,
                conversation_id=conversation_id,
                **fields,
            )
            if conversation_id is not None:
                self._index.bind(conversation_id, session.session_id)
            self._sessions[session.session_id] = session
        LOGGER.debug("Created session %s (conversation=%s)", session.session_id, conversation_id)
        return session.session_id

    async def attach_conversation(self, session_id: str, conversation_id: str) -> None:
        async with self._lock:
            session = self._require(session_id)
            self._index.bind(conversation_id, session_id)
            session.conversation_id = conversation_id
            session.touch(self._clock())

    async def get(self, session_id: str) -> SessionSnapshot:
        async with self._lock:
            return self._require(session_id).snapshot()

    async def get_by_conversation(self, conversation_id: str) -> SessionSnapshot:
        async with self._lock:
            session_id = self._index.session_for(conversation_id)
            if session_id is None:
                raise SessionNotFoundError(f"No session for conversation {conversation_id}")
            return self._require(session_id).snapshot()

    async def session_id_for(self, conversation_id: str) -> str | None:
        async with self._lock:
            return self._index.session_for(conversation_id)

    async def with_mutable(self, session_id: str, fn: Callable[[Session], T]) -> T:
        """Apply ``fn`` to the live session under the registry lock.

        ``fn`` is synchronous on purpose: whatever it needs to do over the
        network has to happen after this call returns.
        """

        async with self._lock:
            session = self._require(session_id)
            session.touch(self._clock())
            return fn(session)

    async def remove(self, session_id: str) -> Session | None:
        async with self._lock:
            return self._remove_locked(session_id)

    async def sweep_expired(self, max_age: float) -> list[Session]:
        async with self._lock:
            now = self._clock()
            expired = [sid for sid, session in self._sessions.items() if session.is_expired(now, max_age)]
            removed = [session for sid in expired if (session := self._remove_locked(sid)) is not None]
        for session in removed:
            LOGGER.info("Removing expired session: %s", session.session_id)
        return removed

    async def enqueue(self, session_id: str, message: QueuedMessage) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.touch(self._clock())
        if session is None:
            LOGGER.debug("Dropping %s for unknown session %s", message.kind.value, session_id)
            return False
        try:
            session.queue.put_nowait(message)
        except asyncio.QueueFull:
            LOGGER.error("Queue full for session %s; dropping %s", session_id, message.kind.value)
            return False
        return True

    async def drain(self, session_id: str, *, timeout: float) -> QueueDrain:
        """Collect buffered messages, waiting up to ``timeout`` for a terminal signal."""

        async with self._lock:
            session = self._require(session_id)
            session.touch(self._clock())
        queue = session.queue

        result = QueueDrain()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not result.terminal:
            try:
                message = queue.get_nowait()
            except asyncio.QueueEmpty:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
            if message.kind is MessageKind.TEXT:
                result.chunks.append(message.text)
            elif message.kind is MessageKind.END_OF_STREAM:
                result.end_of_stream = True
            elif message.kind is MessageKind.END_OF_CONVERSATION:
                result.end_of_conversation = True
        return result

    async def run_sweeper(
        self,
        *,
        interval: float,
        max_age: float,
        on_expired: ExpiredCallback | None = None,
    ) -> None:
        """Background task: periodically evict idle sessions."""

        while True:
            await asyncio.sleep(interval)
            try:
                removed = await self.sweep_expired(max_age)
                if removed and on_expired is not None:
                    await on_expired(removed)
            except Exception:
                LOGGER.exception("Session sweep failed")
            LOGGER.debug("Session cleanup completed")

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def _remove_locked(self, session_id: str) -> Session | None:
        self._index.unbind_session(session_id)
        return self._sessions.pop(session_id, None)
