"""API-facing Pydantic models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

HealthStatus = Literal["UP", "DOWN", "UNKNOWN"]


class MakeCallRequest(BaseModel):
    to_number: str = Field(description="E.164 phone number, e.g. +14155550100")
    env_info: dict[str, Any] | None = Field(
        default=None,
        description="Optional context forwarded to the backend when the session is opened.",
    )


class MakeCallResponse(BaseModel):
    message: str = "Call initiated successfully"
    session_id: str
    call_sid: str


class HealthCheck(BaseModel):
    name: str
    status: HealthStatus


class HealthResponse(BaseModel):
    status: HealthStatus
    checks: list[HealthCheck]
