"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import dispatch, health
from .config import settings
from .data.backend_client import BackendClient
from .errors import BackendCommandError
from .services.dispatch.session import DispatchSession
from .services.routing.directions_client import DirectionsClient

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)-8s %(name)s - %(message)s"))
        root_logger.addHandler(handler)
    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_session() -> DispatchSession:
    """Session wired to whichever collaborators are configured."""
    backend = BackendClient() if settings.backend_base_url else None
    directions = DirectionsClient() if settings.directions_base_url else None
    if backend is None:
        logger.warning("Backend base URL not configured; running on local state only")
    if directions is None:
        logger.warning("Directions provider not configured; routes keep placeholder values")
    return DispatchSession(backend=backend, directions=directions)


def create_app(session_factory: Optional[Callable[[], DispatchSession]] = None) -> FastAPI:
    factory = session_factory or build_session

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        session = factory()
        try:
            await session.load_initial_data()
        except BackendCommandError as exc:
            # Events and later commands still work against an empty roster.
            logger.warning(f"Initial roster fetch failed: {exc}")
        await session.start()
        app.state.session = session
        try:
            yield
        finally:
            app.state.session = None
            await session.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    if settings.frontend_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.frontend_allowed_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Root endpoint for diagnostics
    @app.get("/")
    def root():
        return {
            "service": settings.app_name,
            "status": "running",
            "api_prefix": settings.api_prefix,
            "health": f"{settings.api_prefix}/health",
            "docs": "/docs",
        }

    app.include_router(health.router, prefix=settings.api_prefix)
    app.include_router(dispatch.router, prefix=settings.api_prefix)
    return app


configure_logging(settings.log_level)
app = create_app()
