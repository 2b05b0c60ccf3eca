"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO")

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None, description="E.164, e.g. +1415...")
    twilio_region: str | None = Field(default=None)
    twilio_edge: str | None = Field(default=None)
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    twilio_voice: str = Field(default="Polly.Salli")
    twilio_language: str | None = Field(default=None)
    twilio_speech_model: str = Field(default="googlev2_telephony")
    twilio_default_timeout: int = Field(default=10, ge=1, description="Gather timeout in seconds.")
    twilio_call_api_key: str | None = Field(
        default=None,
        description="Optional API key required to call the outbound call endpoints.",
    )

    # Conversational backend
    backend_url: str = Field(default="http://localhost:8080")
    backend_ws_url: str | None = Field(
        default=None,
        description="WebSocket endpoint pushing backend events; streaming is disabled when unset.",
    )
    backend_authorization_token: str | None = Field(default=None)
    backend_timeout_seconds: float = Field(default=30.0, gt=0)

    # Resilience
    circuit_breaker_enabled: bool = Field(default=True)
    circuit_breaker_threshold: int = Field(default=5, ge=1)
    circuit_breaker_reset_seconds: float = Field(default=30.0, ge=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_ms: int = Field(default=500, ge=0)

    # Sessions
    session_max_age_minutes: float = Field(default=30.0, gt=0)
    session_cleanup_interval_minutes: float = Field(default=5.0, gt=0)
    session_queue_capacity: int = Field(default=100, ge=1)
    partial_processing: bool = Field(
        default=True,
        description="If true, sentence-complete partial transcripts trigger speculative generation.",
    )

    # Backend stream
    ws_heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    ws_check_interval_seconds: float = Field(default=60.0, gt=0)
    ws_backoff_base_seconds: float = Field(default=5.0, ge=0)
    ws_backoff_max_seconds: float = Field(default=300.0, ge=0)

    # Queue polling
    queue_poll_timeout_seconds: float = Field(
        default=1.0,
        ge=0,
        description="How long the queue webhook waits for more streamed chunks before re-polling.",
    )
    queue_redirect_pause_seconds: int = Field(default=1, ge=0)

    @field_validator("backend_url", "public_base_url", "backend_ws_url")
    @classmethod
    def strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return value.rstrip("/")

    @property
    def retry_base_delay_seconds(self) -> float:
        return self.retry_base_delay_ms / 1000.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
