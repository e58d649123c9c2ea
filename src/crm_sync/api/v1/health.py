"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
readiness probe verifies database connectivity, since every sync
invocation reads and writes through it.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from src.crm_sync.config import get_settings
from src.crm_sync.core.database import check_db_connection

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: verifies database connectivity.

    Returns 200 when the database answers, 503 otherwise.
    """
    healthy = await check_db_connection()
    checks = {"database": "ok" if healthy else "error"}
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
