"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/deep  - deep check (DB + Redis + ServiceM8 + worker heartbeats)
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from fieldsync.database import get_db
from fieldsync.utils.redis import get_redis, worker_health_key

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"

# Heartbeats are written every loop; anything older than this is stale.
WORKER_STALE_SECONDS = 600
MONITORED_WORKERS = ("webhook_sweeper", "reconciliation_scheduler")


def _monitored_workers() -> list[str]:
    from fieldsync.config import get_settings
    if get_settings().reconciliation_scheduler_enabled:
        return list(MONITORED_WORKERS)
    return [w for w in MONITORED_WORKERS if w != "reconciliation_scheduler"]


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Readiness check - verifies database and Redis connectivity."""
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis())["healthy"],
    }
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Deep health check - checks every dependency.

    database and redis are critical; ServiceM8 and workers only degrade.
    """
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(),
        "servicem8": await _check_servicem8(request),
        "workers": await _check_workers(),
    }

    critical_healthy = checks["database"]["healthy"] and checks["redis"]["healthy"]
    all_healthy = all(c.get("healthy", False) for c in checks.values())
    if all_healthy:
        status = "healthy"
    elif critical_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    return {
        "status": status,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


async def _check_database(db: AsyncSession) -> dict:
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {"healthy": True}
    except Exception as e:
        logger.error("Health: database check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    try:
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Health: Redis check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_servicem8(request: Request) -> dict:
    client = getattr(request.app.state, "servicem8_client", None)
    if client is None:
        return {"healthy": False, "error": "client not initialized"}
    connected = await client.test_connection()
    stats = client.get_api_stats()
    return {
        "healthy": connected,
        "rate_limit": stats["rate_limit"],
        "cache_hit_rate": stats["cache"]["hit_rate"],
    }


async def _check_workers() -> dict:
    try:
        redis = await get_redis()
        now = datetime.now(timezone.utc)
        workers = {}
        for name in _monitored_workers():
            last = await redis.get(worker_health_key(name))
            if not last:
                workers[name] = {"healthy": False, "last_heartbeat": None}
                continue
            age = (now - datetime.fromisoformat(last)).total_seconds()
            workers[name] = {
                "healthy": age < WORKER_STALE_SECONDS,
                "last_heartbeat": last,
                "age_seconds": int(age),
            }
        return {"healthy": all(w["healthy"] for w in workers.values()), "workers": workers}
    except Exception as e:
        logger.warning("Health: worker heartbeat check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}
