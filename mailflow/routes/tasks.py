# mailflow/routes/tasks.py
"""Trigger for the external clock: process due tasks now."""

from fastapi import APIRouter, Depends, HTTPException, status

from mailflow.auth.verify import tasks_key_dependency
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.jobs.task_scheduler_job import (
    TaskSchedulerJob,
    TaskSchedulerJobError,
    task_scheduler_job,
)
from mailflow.models.api.event_response import ProcessTasksResponse

logger = get_logger(__name__)

router = APIRouter(tags=["tasks"])


def get_task_scheduler() -> TaskSchedulerJob:
    return task_scheduler_job


@router.post("/tasks", response_model=ProcessTasksResponse, dependencies=[Depends(tasks_key_dependency)])
async def process_tasks(
    scheduler: TaskSchedulerJob = Depends(get_task_scheduler),
) -> ProcessTasksResponse:
    """Run one scheduler pass. Safe to call while another pass is running."""
    try:
        metrics = await scheduler.run_once()
    except TaskSchedulerJobError as e:
        logger.error("Task processing failed", error=e.message, operation=e.operation)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Task processing unavailable"
        ) from e

    if metrics.get("skipped"):
        logger.debug("Task pass already running in this process")

    return ProcessTasksResponse()
