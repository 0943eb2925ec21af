"""FastAPI application for the calendar mirror.

This module provides the main FastAPI application with:
- CORS middleware for the web client
- Request logging
- Exception handlers mapping sync errors onto status codes
- Webhook ingress, calendar and user routes
- Background channel renewal
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from calmirror import __version__
from calmirror.api.dependencies import AppServices
from calmirror.api.exceptions import calmirror_exception_handler, unhandled_exception_handler
from calmirror.core.config import AppConfig, get_config
from calmirror.core.exceptions import CalMirrorError
from calmirror.sources.base import ProviderFactory
from calmirror.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: configure logging, initialize the store, start channel renewal
    - Shutdown: stop renewal, wait for detached reconciliations
    """
    services: AppServices = app.state.services
    config = services.config
    setup_logging(config)

    logger.info("Calendar mirror API starting up...")
    logger.info(f"Configuration loaded from {config.general.config_file or 'defaults'}")
    logger.info(f"Data directory: {config.general.data_dir}")

    await services.start()
    logger.info(f"Event store ready at {services.store.db_path}")

    yield

    logger.info("Calendar mirror API shutting down...")
    await services.stop()


def create_app(
    config: AppConfig | None = None,
    provider_factory: ProviderFactory | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Application configuration (the global one if omitted)
        provider_factory: Builds provider clients from an access token
            (Google Calendar if omitted)

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    config = config or get_config()

    app = FastAPI(
        title="Calendar Mirror API",
        description="Mirror a remote calendar into a local store via push notifications and polling",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.services = AppServices.build(config, provider_factory)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests."""
        logger.debug(f"{request.method} {request.url.path}")
        response = await call_next(request)
        logger.debug(f"{request.method} {request.url.path} - {response.status_code}")
        return response

    app.add_exception_handler(CalMirrorError, calmirror_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    from calmirror.api.routes import calendar, health, users, webhook

    app.include_router(health.router, prefix="/api", tags=["Health"])
    app.include_router(webhook.router, prefix="/api/webhook", tags=["Webhook"])
    app.include_router(calendar.router, prefix="/api/calendar", tags=["Calendar"])
    app.include_router(users.router, prefix="/api/users", tags=["Users"])

    @app.get("/")
    async def root():
        """Root endpoint - returns API information."""
        return {
            "name": "Calendar Mirror API",
            "version": __version__,
            "docs": "/api/docs",
            "health": "/api/health",
        }

    logger.debug("FastAPI application created")
    return app
