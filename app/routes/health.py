# app/routes/health.py
"""
Health check endpoints with database pool monitoring.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.jobs.trigger_detector_job import get_trigger_scan_job_status

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "deadman-switch"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check covering the database pool and required configuration.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool health check
    t0 = time.time()
    db_health = await db_health_check()
    is_healthy = db_health.get("healthy", False)

    checks["database"] = {
        "ok": is_healthy,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if "pool_stats" in db_health:
        pool_stats = db_health["pool_stats"]
        checks["database"].update(
            {
                "pool_size": pool_stats.get("pool_size", 0),
                "pool_available": pool_stats.get("pool_available", 0),
            }
        )
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    overall_ok = overall_ok and is_healthy

    # 2) Configuration checks
    config_issues = []
    if not settings.ENCRYPTION_KEY:
        config_issues.append("ENCRYPTION_KEY not set")
    if not settings.CRON_SECRET:
        config_issues.append("CRON_SECRET not set")
    if settings.EMAIL_PROVIDER == "sendgrid" and not settings.SENDGRID_API_KEY:
        config_issues.append("SENDGRID_API_KEY not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    # 3) Scan job status (informational)
    checks["trigger_scan"] = get_trigger_scan_job_status()

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
