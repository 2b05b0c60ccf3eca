"""Twilio Voice integration.

This module provides:
- Voice webhooks (TwiML) for inbound calls, final and partial speech results.
- A queue-polling webhook that speaks text streamed by the backend.
- Status callbacks that tear sessions down when calls end.
- An endpoint to initiate outbound calls.

The voice flow is speech-to-text via Twilio <Gather input="speech">.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from starlette.datastructures import FormData

from api.dependencies import get_orchestrator
from api.schemas import MakeCallRequest, MakeCallResponse
from bot.errors import BridgeError
from bot.orchestrator import CallOrchestrator
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _field(form: FormData, name: str) -> str:
    return str(form.get(name) or "").strip()


def _call_sid(form: FormData) -> str:
    call_sid = _field(form, "CallSid")
    if not call_sid:
        raise HTTPException(status_code=400, detail="Missing CallSid")
    return call_sid


@router.post("/incoming_callback")
async def incoming_callback(
    request: Request,
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
) -> Response:
    form = await request.form()
    call_sid = _call_sid(form)
    action = await orchestrator.handle_call_started(call_sid, _field(form, "From"))
    return _twiml_response(orchestrator.renderer.render(action))


@router.post("/status_callback")
async def status_callback(
    request: Request,
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
) -> Response:
    form = await request.form()
    call_sid = _call_sid(form)
    try:
        await orchestrator.handle_call_status(call_sid, _field(form, "CallStatus"))
    except BridgeError as exc:
        LOGGER.error("Failed to handle status for call %s: %s", call_sid, exc)
        return Response(status_code=500)
    return Response(status_code=200)


@router.post("/transcription_callback")
async def transcription_callback(
    request: Request,
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
) -> Response:
    form = await request.form()
    call_sid = _call_sid(form)
    action = await orchestrator.handle_final_transcript(call_sid, _field(form, "SpeechResult"))
    return _twiml_response(orchestrator.renderer.render(action))


@router.post("/partial_callback")
async def partial_callback(
    request: Request,
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
) -> Response:
    form = await request.form()
    call_sid = _call_sid(form)
    outcome = await orchestrator.handle_partial_transcript(call_sid, _field(form, "UnstableSpeechResult"))
    LOGGER.debug("Partial result for call %s: %s", call_sid, outcome.value if outcome else "no session")
    return Response(status_code=200)


@router.post("/call_queue")
async def call_queue(
    request: Request,
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
) -> Response:
    form = await request.form()
    action = await orchestrator.handle_queue_poll(_call_sid(form))
    return _twiml_response(orchestrator.renderer.render(action))


async def start_outbound_call(
    payload: MakeCallRequest,
    x_api_key: str | None,
    orchestrator: CallOrchestrator,
) -> MakeCallResponse:
    settings = get_settings()
    if settings.twilio_call_api_key and x_api_key != settings.twilio_call_api_key:
        raise HTTPException(status_code=401, detail="Unauthorized")

    LOGGER.debug("Outbound call request for %s", payload.to_number)
    try:
        call = await orchestrator.make_call(payload.to_number, payload.env_info)
    except ValueError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except BridgeError as exc:
        LOGGER.error("Failed to create call: %s", exc)
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

    return MakeCallResponse(session_id=call.session_id, call_sid=call.call_sid)


@router.post("/make_call", response_model=MakeCallResponse)
async def make_call(
    payload: MakeCallRequest,
    x_api_key: Annotated[str | None, Header()] = None,
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
) -> MakeCallResponse:
    return await start_outbound_call(payload, x_api_key, orchestrator)
