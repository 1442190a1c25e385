"""
Health Check Endpoints

Provides health and readiness checks for orchestration systems.
"""

from datetime import datetime
from typing import Dict, Any

from fastapi import APIRouter, Response
from pydantic import BaseModel

from src.aggregation.artifacts import RefreshState
from src.aggregation.service import get_service
from src.config import get_settings
from src.database.connection import check_database_health

settings = get_settings()
router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


def _aggregates_health() -> Dict[str, Any]:
    service = get_service()
    statuses = service.statuses()
    return {
        "status": "healthy",
        "backend": service.backend.name,
        "specs": len(statuses),
        "materialized": sum(1 for s in statuses if s["artifact"] is not None),
        "refreshing": service.coordinator.in_flight(),
        "last_failed": [
            s["spec_id"] for s in statuses
            if s["record"]["last_error"] and s["record"]["state"] != RefreshState.REFRESHING.value
        ],
    }


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Comprehensive health check endpoint.

    Checks:
    - Database connectivity
    - Redis connectivity (redis artifact backend only)
    - Aggregation service state
    """
    checks = {}
    overall_status = "healthy"

    # Check database
    try:
        db_health = await check_database_health()
        checks["database"] = db_health
        if db_health.get("status") != "healthy":
            overall_status = "degraded"
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        overall_status = "unhealthy"

    # Check Redis
    if settings.aggregation.store_backend == "redis":
        try:
            from src.serving.cache import get_redis
            redis = get_redis()
            await redis.ping()
            checks["redis"] = {"status": "healthy"}
        except Exception as e:
            checks["redis"] = {"status": "unhealthy", "error": str(e)}
            overall_status = "unhealthy"

    # Check aggregates
    try:
        checks["aggregates"] = _aggregates_health()
    except RuntimeError as e:
        checks["aggregates"] = {"status": "unhealthy", "error": str(e)}
        overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.utcnow(),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """
    Kubernetes liveness probe endpoint.

    Returns 200 if the application is running.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(response: Response) -> Dict[str, str]:
    """
    Kubernetes readiness probe endpoint.

    Ready once the aggregation service is up. Artifacts are served from the
    store, so a degraded warehouse does not make the API unready.
    """
    try:
        get_service()
    except RuntimeError:
        response.status_code = 503
        return {"status": "not_ready", "reason": "aggregation_service_unavailable"}
    return {"status": "ready"}
