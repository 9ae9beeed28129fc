"""
FastAPI Middleware Application

Main application entry point for the Fatture in Cloud webhook middleware.
Receives webhook deliveries, records them, and queues them for the worker;
also exposes subscription management and health endpoints.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fic_middleware.config import settings
from fic_middleware.container import ServiceContainer
from fic_middleware.routes import health, subscriptions, webhook
from fic_middleware.utils.exceptions import MiddlewareException, RateLimitException
from fic_middleware.utils.logging_config import (
    get_logger,
    set_correlation_id,
    setup_logging,
)

setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.
    Builds the service container unless one was injected, and closes it on shutdown.
    """
    logger.info(
        f"Starting {settings.app_name} v{settings.app_version}",
        extra={"environment": settings.environment},
    )

    owns_container = getattr(app.state, "container", None) is None
    if owns_container:
        app.state.container = ServiceContainer.from_settings(settings)

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application...")
    if owns_container:
        await app.state.container.aclose()
    logger.info("Application shutdown complete")


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Webhook ingestion and subscription lifecycle for Fatture in Cloud",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        """Add correlation ID to all requests for tracing"""
        correlation_id = request.headers.get("X-Correlation-ID")
        if not correlation_id:
            correlation_id = set_correlation_id()
        else:
            set_correlation_id(correlation_id)

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(MiddlewareException)
    async def middleware_exception_handler(request: Request, exc: MiddlewareException):
        """Map middleware exceptions to their status with an {"error": ...} body"""
        log = logger.error if exc.http_status >= 500 else logger.info
        log(
            f"Request rejected: {exc.message}",
            extra={"error": exc.to_dict(), "status_code": exc.http_status, "path": request.url.path},
        )

        headers = None
        if isinstance(exc, RateLimitException) and exc.details.get("retry_after"):
            headers = {"Retry-After": str(exc.details["retry_after"])}

        return JSONResponse(
            status_code=exc.http_status,
            content={"error": exc.message},
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.error(
            f"Unexpected exception: {exc}",
            extra={"error": str(exc), "type": type(exc).__name__},
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    app.include_router(webhook.router)
    app.include_router(subscriptions.router)
    app.include_router(health.router)

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "docs_url": "/docs" if settings.is_development else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fic_middleware.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
