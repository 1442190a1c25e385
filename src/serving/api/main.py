"""
FastAPI Application Factory

Creates and configures the aggregate API application.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import structlog

from src.aggregation.exceptions import (
    AggregationError,
    ComputeError,
    InvalidSpecError,
    NotFoundError,
    PersistenceError,
)
from src.config import get_settings
from src.serving.api.middleware import (
    RequestLoggingMiddleware,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
)
from src.serving.api.routes import aggregates_router, health_router

settings = get_settings()
logger = structlog.get_logger(__name__)

_STATUS_CODES = {
    NotFoundError: 404,
    InvalidSpecError: 422,
    ComputeError: 503,
    PersistenceError: 503,
}


async def aggregation_error_handler(request: Request, exc: AggregationError) -> JSONResponse:
    """Map aggregation errors onto HTTP status codes"""
    status_code = next(
        (code for error_type, code in _STATUS_CODES.items() if isinstance(exc, error_type)),
        500,
    )
    if status_code >= 500:
        logger.error("Aggregation request failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "detail": exc.message,
            "spec_id": exc.spec_id,
        },
    )


def create_api_app(lifespan=None, rate_limit: bool = True) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        lifespan: Lifespan context manager that starts the backing services
        rate_limit: Install the in-memory rate limiter

    Returns:
        Configured FastAPI app instance
    """
    app = FastAPI(
        title="Billing Aggregates API",
        description="Materialized rollups over the billing star schema",
        version=settings.version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Add CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add compression
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Custom middleware
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    if rate_limit:
        app.add_middleware(
            RateLimitMiddleware,
            max_requests=settings.security.rate_limit_requests,
            window_seconds=settings.security.rate_limit_window_seconds,
        )

    app.add_exception_handler(AggregationError, aggregation_error_handler)

    # API routes
    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(aggregates_router, prefix="/api/v1/aggregates", tags=["Aggregates"])

    @app.get("/api/v1/info")
    async def api_info():
        """API information endpoint."""
        return {
            "name": "Billing Aggregates API",
            "version": settings.version,
            "environment": settings.app_env,
            "artifact_backend": settings.aggregation.store_backend,
            "documentation": "/docs" if settings.is_development else None,
        }

    return app
