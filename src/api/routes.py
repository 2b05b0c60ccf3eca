"""FastAPI routes exposing service health and call control."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from api.dependencies import get_orchestrator
from api.schemas import HealthCheck, HealthResponse, MakeCallRequest, MakeCallResponse
from api.twilio_routes import router as twilio_router
from api.twilio_routes import start_outbound_call
from bot.orchestrator import CallOrchestrator

LOGGER = logging.getLogger(__name__)

router = APIRouter()
router.include_router(twilio_router)


@router.get("/health", response_model=HealthResponse)
async def health(orchestrator: CallOrchestrator = Depends(get_orchestrator)) -> JSONResponse:
    checks = [
        HealthCheck(name="TWILIO_BOT", status="UP"),
        HealthCheck(name="BOT_BACK", status="UP" if await orchestrator.backend_healthy() else "DOWN"),
    ]
    if any(check.status == "DOWN" for check in checks):
        overall = "DOWN"
    elif any(check.status == "UNKNOWN" for check in checks):
        overall = "UNKNOWN"
    else:
        overall = "UP"

    body = HealthResponse(status=overall, checks=checks)
    return JSONResponse(status_code=200 if overall == "UP" else 503, content=body.model_dump())


@router.post("/call", response_model=MakeCallResponse)
async def make_call(
    payload: MakeCallRequest,
    x_api_key: Annotated[str | None, Header()] = None,
    orchestrator: CallOrchestrator = Depends(get_orchestrator),
) -> MakeCallResponse:
    return await start_outbound_call(payload, x_api_key, orchestrator)
