"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from bot.orchestrator import CallOrchestrator


@lru_cache(maxsize=1)
def _orchestrator_factory() -> CallOrchestrator:
    # Lazy import so route modules can be imported without building HTTP clients.
    from bot.orchestrator import CallOrchestrator
    from config.settings import get_settings
    from integrations.backend_client import BackendClient
    from integrations.twilio_client import TelephonyClient

    settings = get_settings()
    return CallOrchestrator(
        settings,
        backend=BackendClient(settings),
        telephony=TelephonyClient(settings=settings),
    )


def get_orchestrator() -> CallOrchestrator:
    return _orchestrator_factory()


def reset_orchestrator() -> None:
    _orchestrator_factory.cache_clear()
