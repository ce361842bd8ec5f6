"""Health check endpoints.

Provides:
- Basic health check (GET /health)
- Detailed health check with backend status (GET /health/detailed)
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from parley import __version__
from parley.config import Settings
from parley.services.factory import Backends

router = APIRouter()


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str


class DetailedHealthResponse(BaseModel):
    """Detailed health check response."""

    status: str
    checks: dict[str, str]
    active_sessions: int
    max_sessions: int
    version: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(status="healthy")


@router.get("/health/detailed", response_model=DetailedHealthResponse)
async def detailed_health_check(request: Request) -> DetailedHealthResponse:
    """Backend configuration and session load.

    Backends report whether they are configured or reachable; no audio or
    completions are requested.
    """
    settings: Settings = request.app.state.settings
    backends: Backends = request.app.state.backends
    store = request.app.state.store

    checks: dict[str, str] = {}
    providers = {
        "asr": settings.asr_provider,
        "llm": settings.llm_provider,
        "tts": settings.tts_provider,
    }
    for stage, ok in (await backends.health()).items():
        checks[stage] = f"{providers[stage]}: {'ok' if ok else 'unavailable'}"

    status = "healthy" if all(v.endswith(": ok") for v in checks.values()) else "degraded"

    return DetailedHealthResponse(
        status=status,
        checks=checks,
        active_sessions=store.active_count,
        max_sessions=settings.max_concurrent_sessions,
        version=__version__,
    )
