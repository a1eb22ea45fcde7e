"""FastAPI service exposing reconciliation, completion and maintenance endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from pricebridge import __version__
from pricebridge.config import get_config
from pricebridge.core.errors import PriceBridgeError
from pricebridge.core.logging import configure_logging
from pricebridge.runtime import Services
from pricebridge.web.routes import health, maintenance, reconciliation

logger = structlog.get_logger()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()

        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise

        logger.info("request_completed", status_code=response.status_code)
        response.headers["X-Request-ID"] = request_id
        return response


def create_app(services: Services | None = None) -> FastAPI:
    """Build the application.

    Args:
        services: Pre-built service graph (tests); when omitted the graph is
            created on startup from the environment and closed on shutdown
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if services is not None:
            app.state.services = services
            yield
            return

        config = get_config()
        configure_logging(config.log_level, config.log_format == "json")
        app.state.services = await Services.create(config)
        try:
            yield
        finally:
            await app.state.services.close()
            app.state.services = None

    app = FastAPI(
        title="PriceBridge",
        description="Cross-vendor price reconciliation service",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(PriceBridgeError)
    async def pricebridge_error_handler(request: Request, exc: PriceBridgeError):
        logger.error("unhandled_domain_error", error=str(exc), error_type=type(exc).__name__)
        return JSONResponse(status_code=500, content={"error": type(exc).__name__, "detail": str(exc)})

    app.include_router(health.router)
    app.include_router(reconciliation.router)
    app.include_router(maintenance.router)
    return app


app = create_app()
