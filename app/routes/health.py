# app/routes/health.py
"""
Health check endpoints: liveness, and readiness across the database pool,
the generation service configuration and the auto-reply scheduler.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.features.auto_reply.jobs.auto_reply_job import auto_reply_job
from app.services.openai_service import openai_service

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "inbox-auto-reply"}


@router.get("/readyz")
async def readyz():
    """Readiness check with all dependencies."""
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    db_health = await db_health_check()
    is_healthy = db_health.get("healthy", False)
    checks["database"] = {
        "ok": is_healthy,
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if "pool_stats" in db_health:
        checks["database"].update(db_health["pool_stats"])
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    overall_ok = overall_ok and is_healthy

    # 2) Generation service configuration
    openai_health = openai_service.health_check()
    checks["generation"] = {"ok": openai_health["healthy"], "model": openai_health["model"]}
    overall_ok = overall_ok and openai_health["healthy"]

    # 3) Scheduler
    job_health = auto_reply_job.health_check()
    checks["auto_reply_job"] = {
        "ok": job_health["healthy"],
        "enabled": settings.AUTO_REPLY_ENABLED,
        "last_run_time": job_health["last_run_time"],
    }
    if "warning" in job_health:
        checks["auto_reply_job"]["warning"] = job_health["warning"]
    overall_ok = overall_ok and job_health["healthy"]

    # 4) Configuration
    config_issues = []
    if not settings.ENCRYPTION_KEY:
        config_issues.append("ENCRYPTION_KEY not set")
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        config_issues.append("Google OAuth client not configured")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
