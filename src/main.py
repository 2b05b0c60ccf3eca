"""Entry point for the Twilio call bridge service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.dependencies import get_orchestrator, reset_orchestrator
from api.routes import router as api_router
from config.settings import get_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = get_orchestrator()
    await orchestrator.start()
    try:
        yield
    finally:
        await orchestrator.stop()
        reset_orchestrator()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Twilio Call Bridge",
    description="Bridges Twilio voice webhooks to a stateful conversational backend.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")
