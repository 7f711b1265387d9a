# mailflow/routes/health.py
"""
Liveness and readiness endpoints.

/readyz always answers 200; ``overall_ok`` carries the verdict so the load
balancer and the operator dashboard read the same payload.
"""

import time
from typing import Any

from fastapi import APIRouter

from mailflow.config import settings
from mailflow.db.pool import db_health_check
from mailflow.infrastructure.observability.logging import log_health_check
from mailflow.services.infrastructure.redis_client import fast_redis

router = APIRouter()


def _elapsed_ms(started: float) -> float:
    return round((time.time() - started) * 1000, 1)


async def _check_redis() -> dict[str, Any]:
    started = time.time()
    try:
        ok = bool(await fast_redis.ping())
        check = {"ok": ok, "latency_ms": _elapsed_ms(started)}
    except Exception as e:
        check = {"ok": False, "latency_ms": _elapsed_ms(started), "error": f"{type(e).__name__}: {e}"}

    log_health_check("redis", check["ok"], check["latency_ms"], check.get("error"))
    return check


async def _check_database() -> dict[str, Any]:
    started = time.time()
    try:
        report = await db_health_check()
    except Exception as e:
        check = {"ok": False, "latency_ms": _elapsed_ms(started), "error": f"{type(e).__name__}: {e}"}
    else:
        healthy = report.get("healthy", False)
        check = {"ok": healthy, "latency_ms": _elapsed_ms(started)}
        for field in ("pool_stats", "warnings"):
            if field in report:
                check[field] = report[field]
        if not healthy:
            check["error"] = report.get("error", "Database unhealthy")

    log_health_check("database", check["ok"], check["latency_ms"], check.get("error"))
    return check


def _check_configuration() -> dict[str, Any]:
    issues = []
    if not settings.EMAIL_API_KEY:
        issues.append("EMAIL_API_KEY not set")
    if settings.environment == "production" and not settings.TASKS_API_KEY:
        issues.append("TASKS_API_KEY not set")

    return {"ok": not issues, "issues": issues or None, "environment": settings.environment}


@router.get("/healthz")
async def healthz():
    """Process is up."""
    return {"status": "ok", "service": "mailflow"}


@router.get("/readyz")
async def readyz():
    """Redis (locks, cache, send ledger), the database pool and delivery configuration."""
    checks = {
        "redis": await _check_redis(),
        "database": await _check_database(),
        "configuration": _check_configuration(),
    }
    overall_ok = all(check["ok"] for check in checks.values())

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
