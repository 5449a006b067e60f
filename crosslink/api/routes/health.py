"""Health check endpoints."""

import structlog
from fastapi import APIRouter, Response

from crosslink import __version__
from crosslink.db.client import ping_db
from crosslink.kernel.time import utc_now

router = APIRouter()
logger = structlog.get_logger()

# Track startup time
_startup_time = utc_now()


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if the service is running.
    """
    now = utc_now()
    return {
        "status": "healthy",
        "service": "crosslink-identity",
        "version": __version__,
        "timestamp": now.isoformat(),
        "uptime_seconds": (now - _startup_time).total_seconds(),
    }


@router.get("/ready")
async def readiness_check(response: Response):
    """
    Readiness check endpoint.
    Verifies the database is reachable.
    """
    checks = {"postgres": False}

    try:
        checks["postgres"] = await ping_db()
    except Exception as e:
        logger.warning("PostgreSQL health check failed", error=str(e))

    all_healthy = all(checks.values())
    if not all_healthy:
        response.status_code = 503

    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": utc_now().isoformat(),
    }
