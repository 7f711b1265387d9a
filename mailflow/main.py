"""
FastAPI application: tracking API, campaign delivery, task trigger and health.
"""

import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request

from mailflow.config import settings
from mailflow.db.pool import db_pool
from mailflow.db.schema import apply_schema
from mailflow.infrastructure.observability.logging import (
    get_logger,
    log_request,
    set_process_role,
    setup_logging,
)
from mailflow.routes import campaigns, events, health, tasks
from mailflow.services.infrastructure.redis_client import fast_redis

setup_logging(log_level=settings.LOG_LEVEL, json_output=not settings.debug)
set_process_role("api")
logger = get_logger(__name__)


async def _open_resources() -> list[str]:
    opened: list[str] = []
    try:
        await db_pool.initialize()
        opened.append("database_pool")

        if settings.AUTO_APPLY_SCHEMA:
            await apply_schema()

        await fast_redis.initialize()
        opened.append("redis")
    except Exception as e:
        logger.error("Startup failed", error=str(e), opened=opened)
        await _close_resources(opened)
        raise
    return opened


async def _close_resources(opened: list[str]) -> None:
    # Reverse of opening order
    if "redis" in opened:
        await fast_redis.close()
    if "database_pool" in opened:
        await db_pool.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)
    opened = await _open_resources()
    logger.info("Services ready", services=opened)

    yield

    logger.info("Application shutting down")
    await _close_resources(opened)
    logger.info("Services closed")


app = FastAPI(
    title="Mailflow",
    description="Event-driven email automations and delayed sends",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(events.router)
app.include_router(campaigns.router)
app.include_router(tasks.router)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Bind a request id for every log line emitted while handling the request."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    structlog.contextvars.bind_contextvars(request_id=request_id)

    started = time.time()
    try:
        response = await call_next(request)
        log_request(
            request.method, request.url.path, response.status_code, (time.time() - started) * 1000
        )
        response.headers["X-Request-ID"] = request_id
        return response
    finally:
        structlog.contextvars.unbind_contextvars("request_id")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
