"""
Health check endpoints with dependency monitoring.
"""

import time

from fastapi import APIRouter, Depends

from inbox_triage.infrastructure.observability.logging import log_health_check
from inbox_triage.services.container import Pipeline, get_pipeline

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "inbox-triage"}


@router.get("/readyz")
async def readyz(pipeline: Pipeline = Depends(get_pipeline)):
    """Readiness check covering Redis, the database pool, the cache and the job worker."""
    checks = {}
    overall_ok = True

    # 1) Redis
    if pipeline.redis is not None:
        t0 = time.time()
        try:
            redis_ok = await pipeline.redis.ping()
            checks["redis"] = {"ok": bool(redis_ok), "latency_ms": round((time.time() - t0) * 1000, 1)}
        except Exception as e:
            checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        log_health_check("redis", checks["redis"]["ok"], (time.time() - t0) * 1000, checks["redis"].get("error"))
        overall_ok = overall_ok and checks["redis"]["ok"]
    else:
        checks["redis"] = {"ok": True, "backend": "in_process"}

    # 2) Database pool
    if pipeline.db_pool is not None:
        db_health = await pipeline.db_pool.health_check()
        is_healthy = db_health.pop("healthy", False)
        checks["database"] = {"ok": is_healthy, **db_health}
        log_health_check("database", is_healthy, db_health.get("latency_ms"), db_health.get("error"))
        overall_ok = overall_ok and is_healthy
    else:
        checks["database"] = {"ok": True, "backend": "in_memory"}

    # 3) Cache (degraded cache does not fail readiness)
    checks["cache"] = {"ok": await pipeline.cache.is_available()}

    # 4) Job worker
    checks["worker"] = {
        "running": pipeline.job_manager.worker_running,
        "in_process": pipeline.job_manager.auto_start_worker,
    }

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
