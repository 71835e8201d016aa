"""Health check endpoints."""

from fastapi import APIRouter, Request

from htlc_resolver import __version__
from htlc_resolver.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Basic health check endpoint."""
    engine = request.app.state.engine
    return {
        "status": "healthy" if engine.is_running else "stopped",
        "service": "htlc-resolver",
    }


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Component status plus redacted configuration."""
    engine = request.app.state.engine
    settings = get_settings()
    return {
        "status": "healthy" if engine.is_running else "stopped",
        "service": "htlc-resolver",
        "version": __version__,
        "components": engine.get_status(),
        "config": settings.get_safe_dict(),
    }
