"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from handshake.config import configure_structlog, get_settings
from handshake.db.session import dispose_engine
from handshake.dependencies import get_trusted_proxies
from handshake.error_handlers import register_exception_handlers
from handshake.middleware.correlation_id import CorrelationIdMiddleware
from handshake.middleware.logging import LoggingMiddleware
from handshake.middleware.security_headers import SecurityHeadersMiddleware
from handshake.routers import acceptance, events, handshake, health, profile, uploads
from handshake.services.audit_service import get_audit_service
from handshake.services.challenge_service import get_challenge_service
from handshake.services.event_stream_service import get_event_stream_service
from handshake.services.sweeper import get_sweeper

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the sweeper for the lifetime of the process and drain background work on exit."""
    settings = get_settings()
    sweeper = get_sweeper() if settings.app.sweeper_enabled else None
    if sweeper is not None:
        await sweeper.start()
    logger.info("application_started", sweeper_enabled=sweeper is not None)
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        await get_challenge_service().aclose()
        await get_event_stream_service().aclose()
        await dispose_engine()
        logger.info("application_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_structlog(settings)

    app = FastAPI(title=settings.app.service, lifespan=lifespan)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(
        app,
        environment=settings.app.environment,
        audit_service=get_audit_service(),
        trusted_proxies=get_trusted_proxies(),
    )

    app.include_router(handshake.router)
    app.include_router(profile.router)
    app.include_router(uploads.router)
    app.include_router(events.router)
    app.include_router(acceptance.router)
    app.include_router(health.router)
    return app


app = create_app()
