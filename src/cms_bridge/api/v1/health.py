"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks.
Readiness verifies database connectivity and reports which platforms have
a coordinator.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.cms_bridge.config import get_settings
from src.cms_bridge.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database connectivity and sync engine wiring."""
    checks: dict = {"database": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    coordinators = getattr(request.app.state, "coordinators", None)
    checks["platforms"] = coordinators.platforms() if coordinators is not None else []
    worker = getattr(request.app.state, "sync_worker", None)
    checks["worker"] = "running" if worker is not None and worker.running else "stopped"
    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if the database answers, 503 otherwise."""
    checks = await _check_dependencies(request)
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
