"""FastAPI application factory."""

from fastapi import FastAPI

from htlc_resolver import __version__
from htlc_resolver.config import get_settings
from htlc_resolver.engine import ResolverEngine


def create_app(engine: ResolverEngine) -> FastAPI:
    """Status API over a running engine. The engine's lifecycle belongs to the caller."""
    settings = get_settings()

    app = FastAPI(
        title="HTLC Resolver",
        description="Resolver status and operator API",
        version=__version__,
        debug=settings.debug,
    )
    app.state.engine = engine

    from htlc_resolver.api.routes import health, status

    app.include_router(health.router, tags=["Health"])
    app.include_router(status.router, tags=["Status"])

    return app
