"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kripa import __version__
from kripa.api.routes import error_response, router
from kripa.config import KripaConfig, get_config
from kripa.main import KripaApplication
from kripa.observability import setup_telemetry, shutdown_telemetry
from kripa.observability.metrics import search_requests_total

logger = logging.getLogger(__name__)


def create_app(
    config: KripaConfig | None = None,
    application: KripaApplication | None = None,
) -> FastAPI:
    """Create the Kripa API.

    Args:
        config: Configuration (loaded from the environment otherwise)
        application: Pre-built application; started by the lifespan if needed

    Returns:
        FastAPI app
    """
    config = config or get_config()
    application = application or KripaApplication(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if config.metrics_enabled:
            setup_telemetry(service_name="kripa", environment=config.environment)
        started_here = not application.started
        if started_here:
            await application.start()
        try:
            yield
        finally:
            if started_here:
                await application.stop()
            if config.metrics_enabled:
                shutdown_telemetry()

    app = FastAPI(
        title="Kripa",
        version=__version__,
        debug=config.debug,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.application = application

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else "Invalid request body"
        if request.url.path == "/api/search-stories":
            search_requests_total.labels(outcome="invalid").inc()
        return error_response(400, "invalid_request", message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        if request.url.path == "/api/search-stories":
            search_requests_total.labels(outcome="error").inc()
        return error_response(500, "internal_error", "Something went wrong. Please try again later.")

    app.include_router(router)
    return app
