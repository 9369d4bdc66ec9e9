"""
Health endpoints for load balancers and container health checks.

GET /health        liveness, 200 while the process serves requests
GET /health/ready  database and Redis reachability plus worker heartbeats
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from fixmo.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

APP_VERSION = "2.0.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now(), "version": APP_VERSION}


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Readiness: database unreachable: %s", str(e))
        return False


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """
    Ready when both the database and Redis answer.
    Worker heartbeats are reported but do not affect readiness.
    """
    from fixmo.workers.health import worker_heartbeats

    checks = {"database": await _database_ok(db), "redis": False}
    workers: dict = {}
    try:
        workers = await worker_heartbeats()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Readiness: Redis unreachable: %s", str(e))

    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "workers": workers,
        "timestamp": _now(),
    }
