"""
Health check endpoints: liveness and readiness of the pipeline's dependencies.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.infrastructure.observability.logging import log_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": settings.SERVICE_NAME}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check covering the database pool, Redis and the job queue.

    Redis is reported but does not fail readiness; the cache falls back to
    its in-process tier.
    """
    container = getattr(request.app.state, "container", None)
    if container is None:
        return {"overall_ok": False, "checks": {}, "error": "Pipeline not started", "timestamp": time.time()}

    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    db_health = await container.db.health_check()
    is_healthy = db_health.get("healthy", False)
    checks["database"] = {"ok": is_healthy, "latency_ms": round((time.time() - t0) * 1000, 1)}
    if "pool_stats" in db_health:
        checks["database"].update(db_health["pool_stats"])
    if "warnings" in db_health:
        checks["database"]["warnings"] = db_health["warnings"]
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    log_health_check("database", is_healthy, checks["database"]["latency_ms"], checks["database"].get("error"))
    overall_ok = overall_ok and is_healthy

    # 2) Redis
    t0 = time.time()
    if container.cache.shared is None:
        checks["redis"] = {"ok": False, "degraded": True, "error": "Running with local cache only"}
    else:
        redis_ok = await container.redis.ping()
        checks["redis"] = {"ok": redis_ok, "latency_ms": round((time.time() - t0) * 1000, 1)}

    # 3) Job queue
    t0 = time.time()
    try:
        metrics = await container.queue.metrics()
        checks["queue"] = {
            "ok": True,
            "backend": settings.QUEUE_BACKEND,
            "totals": metrics["totals"],
            "alerting": metrics["alerting"],
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
    except Exception as e:
        checks["queue"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
