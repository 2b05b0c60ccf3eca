"""Reconnecting WebSocket clients that forward backend push events into sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from pydantic import BaseModel, Field, ValidationError

from bot.resilience import backoff_delay
from bot.session import QueuedMessage

LOGGER = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 5

Deliver = Callable[[str, QueuedMessage], Awaitable[bool]]
Connector = Callable[[str], Awaitable[Any]]


class StreamFrame(BaseModel):
    """Inbound frame pushed by the backend."""

    type: str
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


def classify_frame(frame: StreamFrame) -> QueuedMessage | None:
    if frame.type == "message":
        return QueuedMessage.text_chunk(frame.message)
    if frame.type == "eos":
        return QueuedMessage.end_of_stream()
    if frame.type == "timeout":
        return QueuedMessage.end_of_conversation()
    return None


async def connect_websocket(url: str) -> Any:
    # Liveness is probed by our own heartbeat task.
    return await websockets.connect(url, ping_interval=None, open_timeout=10)


class StreamingConnection:
    """One backend stream bound to a session id.

    ``Disconnected -> Connecting -> Connected -> Disconnected`` until the
    bridge removes it. The connection only knows the session id; events for a
    session that no longer exists are discarded by ``deliver``.
    """

    def __init__(
        self,
        session_id: str,
        endpoint: str,
        *,
        deliver: Deliver,
        connector: Connector = connect_websocket,
        heartbeat_interval: float = 30.0,
        backoff_base: float = 5.0,
        backoff_max: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = session_id
        self.endpoint = endpoint
        self.connected = False
        self.connecting = False
        self.consecutive_failures = 0
        self.last_reconnect_attempt: float | None = None
        self._deliver = deliver
        self._connector = connector
        self._heartbeat_interval = heartbeat_interval
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._clock = clock
        self._lock = asyncio.Lock()
        self._ws: Any = None
        self._receive_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def backoff_seconds(self) -> float:
        if self.consecutive_failures == 0:
            return 0.0
        return backoff_delay(self.consecutive_failures, self._backoff_base, self._backoff_max)

    async def ensure_connected(self) -> bool:
        """Connect unless already connected or still inside the backoff window."""

        async with self._lock:
            if self.connected or self._closed:
                return self.connected
            now = self._clock()
            if self.last_reconnect_attempt is not None:
                if now - self.last_reconnect_attempt < self.backoff_seconds():
                    return False
            self.last_reconnect_attempt = now
            await self._connect_locked()
            return self.connected

    async def _connect_locked(self) -> None:
        LOGGER.info("Connecting to backend stream at %s", self.endpoint)
        self.connecting = True
        try:
            ws = await self._connector(self.endpoint)
        except Exception as exc:
            self.connected = False
            self.consecutive_failures += 1
            LOGGER.error("Failed to connect backend stream for session %s: %s", self.session_id, exc)
            if self.consecutive_failures >= MAX_RECONNECT_ATTEMPTS:
                LOGGER.error(
                    "Maximum consecutive reconnect attempts reached for session %s",
                    self.session_id,
                )
            return
        finally:
            self.connecting = False

        if self._closed:
            await _close_quietly(ws)
            return

        LOGGER.info("Connected backend stream for session %s", self.session_id)
        self._ws = ws
        self.connected = True
        self.consecutive_failures = 0
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                await self.handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.error("Backend stream error for session %s: %s", self.session_id, exc)
        finally:
            LOGGER.debug("Backend stream receiver ended for session %s", self.session_id)
            self._mark_disconnected(ws)

    async def handle_raw(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        LOGGER.debug("Received backend stream frame: %s", raw)
        try:
            frame = StreamFrame.model_validate_json(raw)
        except ValidationError as exc:
            LOGGER.warning("Ignoring malformed stream frame for session %s: %s", self.session_id, exc)
            return

        message = classify_frame(frame)
        if message is None:
            LOGGER.debug("Unknown stream frame type: %s", frame.type)
            return
        await self._deliver(self.session_id, message)

    async def _heartbeat_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            LOGGER.debug("Sending heartbeat for session %s", self.session_id)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self._heartbeat_interval)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.warning("Heartbeat failed for session %s: %s", self.session_id, exc)
                self._mark_disconnected(ws)
                await _close_quietly(ws)
                return

    def _mark_disconnected(self, ws: Any) -> None:
        if self._ws is not ws:
            return
        self.connected = False
        self._ws = None
        current = asyncio.current_task()
        for task in (self._receive_task, self._heartbeat_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

    async def close(self) -> None:
        self._closed = True
        ws = self._ws
        self._mark_disconnected(ws)
        if ws is not None:
            await _close_quietly(ws)


async def _close_quietly(ws: Any) -> None:
    try:
        await ws.close()
    except Exception as exc:
        LOGGER.debug("Ignoring error while closing backend stream: %s", exc)


class StreamingBridge:
    """Tracks one :class:`StreamingConnection` per session."""

    def __init__(
        self,
        deliver: Deliver,
        *,
        connector: Connector = connect_websocket,
        heartbeat_interval: float = 30.0,
        backoff_base: float = 5.0,
        backoff_max: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._deliver = deliver
        self._connector = connector
        self._heartbeat_interval = heartbeat_interval
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._clock = clock
        self._lock = asyncio.Lock()
        self._connections: dict[str, StreamingConnection] = {}
        self._pending: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._connections)

    def get(self, session_id: str) -> StreamingConnection | None:
        return self._connections.get(session_id)

    async def get_or_create(self, session_id: str, endpoint: str) -> StreamingConnection:
        connection = self._connections.get(session_id)
        if connection is not None:
            return connection

        async with self._lock:
            connection = self._connections.get(session_id)
            if connection is not None:
                return connection
            connection = StreamingConnection(
                session_id,
                endpoint,
                deliver=self._deliver,
                connector=self._connector,
                heartbeat_interval=self._heartbeat_interval,
                backoff_base=self._backoff_base,
                backoff_max=self._backoff_max,
                clock=self._clock,
            )
            self._connections[session_id] = connection

        task = asyncio.create_task(connection.ensure_connected())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return connection

    async def remove(self, session_id: str) -> None:
        async with self._lock:
            connection = self._connections.pop(session_id, None)
        if connection is not None:
            await connection.close()
            LOGGER.debug("Removed backend stream for session %s", session_id)

    async def check_connections(self) -> None:
        async with self._lock:
            connections = list(self._connections.values())
        for connection in connections:
            if not connection.connected and not connection.closed:
                LOGGER.info("Attempting to reconnect backend stream for session %s", connection.session_id)
                await connection.ensure_connected()

    async def run_connection_checker(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_connections()
            except Exception:
                LOGGER.exception("Backend stream health check failed")

    async def close_all(self) -> None:
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
        for connection in connections:
            await connection.close()
        for task in list(self._pending):
            task.cancel()
