"""
FastAPI Production Application

Main entry point for the Billing Aggregates API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
import structlog

from src.aggregation.service import close_service, init_service
from src.config import get_settings
from src.config.logging import configure_logging
from src.database.connection import close_database, create_tables, init_database
from src.serving.api.main import create_api_app
from src.serving.cache import close_redis, init_redis

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Configure logging first
    configure_logging()

    logger.info("Starting Billing Aggregates API", environment=settings.app_env)

    # The warehouse database is required: it is the source of every refresh
    await init_database()
    if settings.aggregation.auto_create_tables:
        await create_tables()

    if settings.aggregation.store_backend == "redis":
        await init_redis()

    await init_service()

    yield

    # Cleanup
    logger.info("Shutting down...")
    await close_service()
    await close_redis()
    await close_database()


# Create FastAPI application
app = create_api_app(lifespan=lifespan)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
