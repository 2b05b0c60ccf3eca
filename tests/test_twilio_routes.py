from __future__ import annotations

import asyncio

from bot.errors import RetryExhaustedError, TransportFailureError
from bot.session import QueuedMessage
from integrations.backend_client import BackendReply


def _start_call(client, call_sid: str = "CA1"):
    return client.post("/api/twilio/incoming_callback", data={"CallSid": call_sid, "From": "+15551234567"})


def _say(client, speech: str, call_sid: str = "CA1"):
    return client.post(
        "/api/twilio/transcription_callback",
        data={"CallSid": call_sid, "SpeechResult": speech},
    )


def test_incoming_call_opens_backend_session_and_greets(client, fake_backend, orchestrator):
    resp = _start_call(client)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/xml")
    assert "<Gather" in resp.text
    assert "Hi, how can I help?" in resp.text

    name, kwargs = fake_backend.calls[0]
    assert name == "open_session"
    assert kwargs["conversation_id"] == "CA1"
    assert kwargs["name"] == "+15551234567"
    assert asyncio.run(orchestrator.registry.session_id_for("CA1")) is not None


def test_repeated_incoming_callback_reuses_session(client, fake_backend):
    _start_call(client)
    resp = _start_call(client)

    assert resp.status_code == 200
    assert "Hi, how can I help?" in resp.text
    assert fake_backend.count("open_session") == 1


def test_incoming_call_without_greeting_uses_default(client, fake_backend):
    fake_backend.greeting = None
    resp = _start_call(client)
    assert "Hello, welcome to our service." in resp.text


def test_incoming_call_backend_failure_apologizes_and_hangs_up(client, fake_backend, orchestrator):
    fake_backend.open_error = RetryExhaustedError(TransportFailureError("down"), 2)

    resp = _start_call(client)

    assert resp.status_code == 200
    assert "Sorry, we're experiencing technical difficulties." in resp.text
    assert "<Hangup/>" in resp.text
    assert asyncio.run(orchestrator.registry.session_id_for("CA1")) is None


def test_missing_call_sid_is_rejected(client):
    resp = client.post("/api/twilio/incoming_callback", data={"From": "+1555"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Missing CallSid"


def test_transcription_speaks_backend_reply(client, fake_backend):
    fake_backend.run_replies["What's the weather?"] = BackendReply(response="It's sunny.")
    _start_call(client)

    resp = _say(client, "What's the weather?")

    assert resp.status_code == 200
    assert "<Gather" in resp.text
    assert "It's sunny." in resp.text
    assert ("run", ("backend-1", "What's the weather?")) in fake_backend.calls


def test_ending_reply_hangs_up_and_later_turns_expire(client, fake_backend):
    fake_backend.run_replies["Goodbye."] = BackendReply(response="Bye!", metadata={"ends": True})
    _start_call(client)

    resp = _say(client, "Goodbye.")
    assert "Bye!</Say><Hangup/>" in resp.text
    assert "<Gather" not in resp.text

    again = _say(client, "Are you there?")
    assert "Your session has expired. Goodbye." in again.text
    assert "<Hangup/>" in again.text
    assert fake_backend.count("run") == 1


def test_unknown_call_gets_expired_message(client, fake_backend):
    resp = _say(client, "Hello?", call_sid="CA-unknown")

    assert resp.status_code == 200
    assert "Your session has expired. Goodbye." in resp.text
    assert "<Hangup/>" in resp.text
    assert fake_backend.count("run") == 0


def test_blank_speech_reprompts(client, fake_backend):
    _start_call(client)
    resp = _say(client, "   ")

    assert "<Gather" in resp.text
    assert "Could you repeat?" in resp.text
    assert fake_backend.count("run") == 0


def test_backend_failure_during_turn_hangs_up(client, fake_backend):
    fake_backend.run_error = RetryExhaustedError(TransportFailureError("down"), 2)
    _start_call(client)

    resp = _say(client, "Hello.")

    assert resp.status_code == 200
    assert "technical difficulties" in resp.text
    assert "<Hangup/>" in resp.text


def test_code_reply_plays_digits(client, fake_backend):
    fake_backend.run_replies["Transfer me."] = BackendReply(response="CODE: 1234#")
    _start_call(client)

    resp = _say(client, "Transfer me.")

    assert '<Play digits="1234#"/>' in resp.text


def test_partial_callback_starts_speculation(client, fake_backend, orchestrator):
    fake_backend.start_reply = BackendReply(response="It's sunny.")
    _start_call(client)

    resp = client.post(
        "/api/twilio/partial_callback",
        data={"CallSid": "CA1", "UnstableSpeechResult": "What's the weather?"},
    )
    assert resp.status_code == 200

    final = _say(client, "what's the weather?")
    assert "It's sunny." in final.text
    assert fake_backend.count("start") == 1
    assert fake_backend.count("commit") == 1
    assert fake_backend.count("run") == 0


def test_partial_callback_for_unknown_call_is_ok(client):
    resp = client.post(
        "/api/twilio/partial_callback",
        data={"CallSid": "CA-unknown", "UnstableSpeechResult": "Hello."},
    )
    assert resp.status_code == 200


def test_call_queue_speaks_streamed_reply(client, orchestrator):
    _start_call(client)
    session_id = asyncio.run(orchestrator.registry.session_id_for("CA1"))
    for message in (
        QueuedMessage.text_chunk("Streaming "),
        QueuedMessage.text_chunk("answer."),
        QueuedMessage.end_of_stream(),
    ):
        asyncio.run(orchestrator.registry.enqueue(session_id, message))

    resp = client.post("/api/twilio/call_queue", data={"CallSid": "CA1"})

    assert resp.status_code == 200
    assert "Streaming answer." in resp.text
    assert "<Gather" in resp.text


def test_call_queue_redirects_while_stream_is_open(client, orchestrator):
    _start_call(client)
    session_id = asyncio.run(orchestrator.registry.session_id_for("CA1"))
    asyncio.run(orchestrator.registry.enqueue(session_id, QueuedMessage.text_chunk("Working on it.")))

    resp = client.post("/api/twilio/call_queue", data={"CallSid": "CA1"})

    assert "Working on it." in resp.text
    assert "/api/twilio/call_queue</Redirect>" in resp.text


def test_call_queue_end_of_conversation_hangs_up(client, orchestrator):
    _start_call(client)
    session_id = asyncio.run(orchestrator.registry.session_id_for("CA1"))
    asyncio.run(orchestrator.registry.enqueue(session_id, QueuedMessage.text_chunk("Goodbye.")))
    asyncio.run(orchestrator.registry.enqueue(session_id, QueuedMessage.end_of_conversation()))

    resp = client.post("/api/twilio/call_queue", data={"CallSid": "CA1"})

    assert "Goodbye.</Say><Hangup/>" in resp.text
    assert asyncio.run(orchestrator.registry.get(session_id)).session_ending


def test_status_completed_removes_session_and_closes_backend(client, fake_backend, orchestrator):
    _start_call(client)

    resp = client.post("/api/twilio/status_callback", data={"CallSid": "CA1", "CallStatus": "completed"})

    assert resp.status_code == 200
    assert asyncio.run(orchestrator.registry.session_id_for("CA1")) is None
    assert ("close_session", ("backend-1", "completed")) in fake_backend.calls

    again = _say(client, "Hello?")
    assert "Your session has expired. Goodbye." in again.text


def test_status_for_unknown_call_is_ignored(client, fake_backend):
    resp = client.post("/api/twilio/status_callback", data={"CallSid": "CA-x", "CallStatus": "completed"})
    assert resp.status_code == 200
    assert fake_backend.count("close_session") == 0


def test_make_call_creates_outbound_call(client, fake_backend, fake_telephony, orchestrator):
    resp = client.post("/api/twilio/make_call", json={"to_number": "+15550001111", "env_info": {"lang": "en"}})

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Call initiated successfully"
    assert body["call_sid"] == "CA123"

    created = fake_telephony.created[0]
    assert created["to"] == "+15550001111"
    assert created["from_"] == "+15005550006"
    assert created["status_callback"] == "https://bridge.example.com/api/twilio/status_callback"

    _, kwargs = fake_backend.calls[0]
    assert kwargs["kwargs"] == {"env_info": {"lang": "en"}}
    assert ("update_session", ("backend-1", "CA123")) in fake_backend.calls
    assert asyncio.run(orchestrator.registry.session_id_for("CA123")) == body["session_id"]


def test_answered_outbound_call_receives_greeting(client, fake_telephony):
    client.post("/api/twilio/make_call", json={"to_number": "+15550001111"})

    resp = client.post("/api/twilio/status_callback", data={"CallSid": "CA123", "CallStatus": "in-progress"})

    assert resp.status_code == 200
    call_sid, twiml = fake_telephony.updated[0]
    assert call_sid == "CA123"
    assert "Hi, how can I help?" in twiml


def test_make_call_failure_maps_error_and_cleans_up(client, fake_backend, fake_telephony, orchestrator):
    fake_telephony.create_error = RetryExhaustedError(TransportFailureError("twilio down"), 2)

    resp = client.post("/api/twilio/make_call", json={"to_number": "+15550001111"})

    assert resp.status_code == 503
    assert "Retries exhausted" in resp.json()["detail"]
    assert len(orchestrator.registry) == 0
    assert ("close_session", ("backend-1", "failed")) in fake_backend.calls
