"""
Background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable, opens the shared resources and delegates to the job.
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from mailflow.config import settings
from mailflow.db.pool import db_pool
from mailflow.infrastructure.observability.logging import get_logger, set_process_role, setup_logging
from mailflow.jobs.task_scheduler_job import run_task_scheduler_job, start_task_scheduler
from mailflow.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[object]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    # Poll forever on TASK_POLL_INTERVAL_SECONDS
    "task_scheduler": start_task_scheduler,
    # Drain the current backlog once and exit (cron-style)
    "process_due_tasks": run_task_scheduler_job,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "task_scheduler").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    set_process_role(f"worker:{name}")
    logger.info("Starting background worker", job=name)
    await JOB_REGISTRY[name]()


async def _run_with_resources(job_name: str) -> None:
    await db_pool.initialize()
    await fast_redis.initialize()
    try:
        await run_worker(job_name)
    finally:
        await fast_redis.close()
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(_run_with_resources(job_name))


if __name__ == "__main__":
    main()
