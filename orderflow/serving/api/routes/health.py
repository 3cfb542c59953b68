"""
Health Check Endpoints

Provides health and readiness checks for orchestration systems.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Response
from pydantic import BaseModel

from orderflow.config import get_settings
from orderflow.database.connection import check_database_health
from orderflow.ledger.store import get_redis

settings = get_settings()
router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health of the API and the stores the pipelines depend on.

    Checks:
    - Database connectivity
    - Redis aggregate store connectivity
    """
    checks = {}
    overall_status = "healthy"

    db_health = await check_database_health()
    checks["database"] = db_health
    if db_health.get("status") != "healthy":
        overall_status = "degraded"

    try:
        await get_redis().ping()
        checks["redis"] = {"status": "healthy"}
    except Exception as e:
        checks["redis"] = {"status": "unhealthy", "error": str(e)}
        if overall_status == "healthy":
            overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Returns 200 if the application is running."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(response: Response) -> Dict[str, str]:
    """Returns 200 if the database is reachable."""
    db_health = await check_database_health()
    if db_health.get("status") != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "database_unavailable"}
    return {"status": "ready"}
