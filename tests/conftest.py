from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Any

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from config.settings import Settings  # noqa: E402
from integrations.backend_client import BackendReply, OpenSessionReply  # noqa: E402
from integrations.twilio_client import CallInfo  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory stand-in for ``BackendClient`` recording every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.run_replies: dict[str, BackendReply] = {}
        self.default_reply = BackendReply(response="Okay.")
        self.start_reply: BackendReply | None = None
        self.greeting: str | None = "Hi, how can I help?"
        self.open_error: Exception | None = None
        self.run_error: Exception | None = None
        self.start_error: Exception | None = None
        self.delay = 0.0
        self.start_gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.healthy = True
        self.closed = False
        self._counter = 0

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def _generation_call(self, name: str, payload: Any) -> None:
        self.calls.append((name, payload))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if name == "start" and self.start_gate is not None:
                await self.start_gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1

    async def open_session_with_retry(self, **kwargs: Any) -> OpenSessionReply:
        self.calls.append(("open_session", kwargs))
        if self.open_error is not None:
            raise self.open_error
        self._counter += 1
        metadata = {"initialization_response": {"greeting": self.greeting}} if self.greeting else {}
        return OpenSessionReply.model_validate({"session": {"session_id": f"backend-{self._counter}"}, "metadata": metadata})

    async def update_session(self, session_id: str, *, conversation_id: str | None = None) -> BackendReply:
        self.calls.append(("update_session", (session_id, conversation_id)))
        return BackendReply()

    async def close_session_with_retry(self, session_id: str, *, status: str | None = None) -> None:
        self.calls.append(("close_session", (session_id, status)))

    async def start(self, session_id: str, message: str) -> BackendReply:
        await self._generation_call("start", (session_id, message))
        if self.start_error is not None:
            raise self.start_error
        return self.start_reply or self.run_replies.get(message, self.default_reply)

    async def run_with_retry(self, session_id: str, message: str, kwargs: dict | None = None) -> BackendReply:
        await self._generation_call("run", (session_id, message))
        if self.run_error is not None:
            raise self.run_error
        return self.run_replies.get(message, self.default_reply)

    async def commit(self, session_id: str) -> BackendReply:
        await self._generation_call("commit", session_id)
        return BackendReply()

    async def rollback(self, session_id: str) -> BackendReply:
        await self._generation_call("rollback", session_id)
        return BackendReply()

    async def health_check(self) -> bool:
        return self.healthy

    async def aclose(self) -> None:
        self.closed = True


class FakeTelephony:
    def __init__(self) -> None:
        self.created: list[dict[str, str]] = []
        self.updated: list[tuple[str, str]] = []
        self.create_error: Exception | None = None

    async def create_call_with_retry(self, *, to: str, from_: str, twiml: str, status_callback: str) -> CallInfo:
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"to": to, "from_": from_, "twiml": twiml, "status_callback": status_callback})
        return CallInfo(sid="CA123", status="queued")

    async def update_call_with_retry(self, call_sid: str, twiml: str) -> None:
        self.updated.append((call_sid, twiml))


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "public_base_url": "https://bridge.example.com",
        "twilio_from_number": "+15005550006",
        "backend_url": "http://backend.test",
        "retry_attempts": 2,
        "retry_base_delay_ms": 0,
        "queue_poll_timeout_seconds": 0.05,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def fake_telephony() -> FakeTelephony:
    return FakeTelephony()


@pytest.fixture(scope="session")
def app():
    os.environ.setdefault("BACKEND_URL", "http://backend.test")
    os.environ.setdefault("PUBLIC_BASE_URL", "https://bridge.example.com")

    import importlib

    from config.settings import get_settings

    # Ensure clean import with the test settings.
    get_settings.cache_clear()
    for module_name in [
        "api.dependencies",
        "api.twilio_routes",
        "api.routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def orchestrator(fake_backend: FakeBackend, fake_telephony: FakeTelephony):
    from bot.orchestrator import CallOrchestrator

    return CallOrchestrator(make_settings(), backend=fake_backend, telephony=fake_telephony)


@pytest.fixture()
def client(app, orchestrator):
    from fastapi.testclient import TestClient

    import api.dependencies as deps

    app.dependency_overrides[deps.get_orchestrator] = lambda: orchestrator

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
