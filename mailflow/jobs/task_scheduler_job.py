"""
Task scheduler job.

Drains the tasks that are due right now. Each task is guarded by a Redis
lease (``lock:<task_id>``) so overlapping invocations, from the worker loop or
from POST /tasks, never work the same task at the same time. One invocation
processes the current backlog in due order and returns; it never blocks
waiting for new work.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from mailflow.config import settings
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import OutboundEmail, Task, TaskGraph, TemplateType
from mailflow.repositories.automation_repository import (
    AutomationRepository,
    automation_repository,
)
from mailflow.repositories.campaign_repository import CampaignRepository, campaign_repository
from mailflow.repositories.contact_repository import ContactRepository, contact_repository
from mailflow.repositories.email_repository import EmailRepository, email_repository
from mailflow.repositories.project_repository import ProjectRepository, project_repository
from mailflow.repositories.task_repository import TaskRepository, task_repository
from mailflow.repositories.trigger_repository import TriggerRepository, trigger_repository
from mailflow.services import keys
from mailflow.services.email.composer import compose_automation_email, compose_campaign_email
from mailflow.services.email.dispatcher import EmailDeliveryError, EmailDispatcher, email_dispatcher
from mailflow.services.email.send_ledger import SendLedger, send_ledger
from mailflow.services.lock_store import LockStore, lock_store
from mailflow.utils.time import utc_now

logger = get_logger(__name__)


class TaskSchedulerJobError(Exception):
    """The due-task batch could not be processed at all."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.recoverable = recoverable


class TaskConfigurationError(Exception):
    """A task points at something that no longer exists; it can never succeed."""

    def __init__(self, message: str, task_id: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.message = message
        self.operation = "load_task_graph"
        self.task_id = task_id
        self.recoverable = recoverable


class TaskSchedulerMetrics:
    """Counters for one scheduler invocation."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = utc_now()
        self.tasks_fetched = 0
        self.sent = 0
        self.dropped = 0
        self.skipped_locked = 0
        self.skipped_retired = 0
        self.failed = 0
        self.deduplicated = 0
        self.orphan_cleanups = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_sent(self, task_id: UUID, message_id: str, duration_ms: float):
        self.sent += 1
        logger.info(
            "Task sent",
            task_id=str(task_id),
            message_id=message_id,
            duration_ms=round(duration_ms, 2),
            job_run="task_scheduler",
        )

    def record_dropped(self, task_id: UUID, reason: str):
        self.dropped += 1
        logger.info("Task dropped", task_id=str(task_id), reason=reason, job_run="task_scheduler")

    def record_skipped_locked(self, task_id: UUID):
        self.skipped_locked += 1
        logger.debug("Task locked by another worker", task_id=str(task_id))

    def record_skipped_retired(self, task_id: UUID):
        self.skipped_retired += 1
        logger.info(
            "Task retired by another worker since fetch",
            task_id=str(task_id),
            job_run="task_scheduler",
        )

    def record_deduplicated(self, task_id: UUID, message_id: str):
        self.deduplicated += 1
        logger.warning(
            "Task already sent, retiring without resend",
            task_id=str(task_id),
            message_id=message_id,
            job_run="task_scheduler",
        )

    def record_orphan_cleanup(self, project_id: UUID, removed: int):
        self.orphan_cleanups += 1
        logger.warning(
            "Project missing, removed its pending tasks",
            project_id=str(project_id),
            removed=removed,
            job_run="task_scheduler",
        )

    def record_failure(self, task_id: UUID, error: str):
        self.failed += 1
        self.errors.append(
            {"task_id": str(task_id), "error": error, "timestamp": utc_now().isoformat()}
        )
        logger.error(
            "Task send failed, will retry after lock expiry",
            task_id=str(task_id),
            error=error,
            job_run="task_scheduler",
        )

    def finalize(self):
        self.total_duration_seconds = (utc_now() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "task_scheduler",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "tasks_fetched": self.tasks_fetched,
            "sent": self.sent,
            "dropped": self.dropped,
            "skipped_locked": self.skipped_locked,
            "skipped_retired": self.skipped_retired,
            "failed": self.failed,
            "deduplicated": self.deduplicated,
            "orphan_cleanups": self.orphan_cleanups,
            "errors_count": len(self.errors),
        }


class TaskSchedulerJob:
    """Executes due tasks: lock, load, re-validate, send, retire, unlock."""

    def __init__(
        self,
        tasks: TaskRepository | None = None,
        contacts: ContactRepository | None = None,
        projects: ProjectRepository | None = None,
        automations: AutomationRepository | None = None,
        campaigns: CampaignRepository | None = None,
        triggers: TriggerRepository | None = None,
        emails: EmailRepository | None = None,
        locks: LockStore | None = None,
        ledger: SendLedger | None = None,
        dispatcher: EmailDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.tasks = tasks or task_repository
        self.contacts = contacts or contact_repository
        self.projects = projects or project_repository
        self.automations = automations or automation_repository
        self.campaigns = campaigns or campaign_repository
        self.triggers = triggers or trigger_repository
        self.emails = emails or email_repository
        self.locks = locks or lock_store
        self.ledger = ledger or send_ledger
        self.dispatcher = dispatcher or email_dispatcher
        self.clock = clock

        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = TaskSchedulerMetrics()

    async def run_once(self) -> dict:
        """
        Process every task due at this instant.

        Per-task failures are recorded and never abort the batch.

        Raises:
            TaskSchedulerJobError: the due-task query failed
        """
        if self.is_running:
            logger.warning("Task scheduler already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            now = self.clock()
            due = await self._get_due_tasks(now)
            self.job_metrics.tasks_fetched = len(due)

            if not due:
                logger.debug("No tasks due")
                self.job_metrics.finalize()
                self.last_run_time = now
                return self.job_metrics.to_dict()

            logger.info("Processing due tasks", task_count=len(due), now=now.isoformat())

            for task in due:
                await self._process_task(task)

            self.job_metrics.finalize()
            self.last_run_time = now

            metrics = self.job_metrics.to_dict()
            logger.info("Task scheduler run completed", **metrics)
            return metrics

        finally:
            self.is_running = False

    async def _get_due_tasks(self, now: datetime) -> list[Task]:
        try:
            return await self.tasks.find_due(now)
        except Exception as e:
            logger.error("Failed to fetch due tasks", error=str(e), error_type=type(e).__name__)
            raise TaskSchedulerJobError(
                f"Failed to fetch due tasks: {e}", operation="find_due_tasks"
            ) from e

    async def _process_task(self, task: Task) -> None:
        lock_key = keys.task_lock(task.id)
        if not await self.locks.acquire(lock_key, settings.TASK_LOCK_TTL_SECONDS):
            self.job_metrics.record_skipped_locked(task.id)
            return

        # A failed send keeps the lease so no one retries before it expires
        release_lock = True
        try:
            await self._execute_task(task)

        except TaskConfigurationError as e:
            logger.error("Task cannot be executed", task_id=str(task.id), error=e.message)
            await self._retire(task)
            self.job_metrics.record_dropped(task.id, "configuration")

        except TimeoutError:
            release_lock = False
            self.job_metrics.record_failure(
                task.id, f"Send timed out after {settings.SEND_TIMEOUT_SECONDS}s"
            )

        except EmailDeliveryError as e:
            release_lock = False
            self.job_metrics.record_failure(task.id, e.message)

        except Exception as e:
            release_lock = False
            self.job_metrics.record_failure(task.id, f"Unexpected error: {type(e).__name__}: {e}")

        finally:
            if release_lock:
                await self.locks.release(lock_key)

    async def _load_graph(self, task: Task) -> TaskGraph:
        contact = await self.contacts.get(task.contact_id)
        if contact is None:
            raise TaskConfigurationError("Task contact no longer exists", task_id=str(task.id))

        project = await self.projects.get(contact.project_id)
        if project is None:
            return TaskGraph(task=task, contact=contact, project=None)

        if task.automation_id is not None:
            automation = await self.automations.get(task.automation_id)
            if automation is None:
                raise TaskConfigurationError("Task automation no longer exists", str(task.id))
            if automation.template is None:
                raise TaskConfigurationError("Task automation has no template", str(task.id))
            return TaskGraph(task=task, contact=contact, project=project, automation=automation)

        if task.campaign_id is not None:
            campaign = await self.campaigns.get(task.campaign_id)
            if campaign is None:
                raise TaskConfigurationError("Task campaign no longer exists", str(task.id))
            return TaskGraph(task=task, contact=contact, project=project, campaign=campaign)

        raise TaskConfigurationError("Task has neither automation nor campaign", str(task.id))

    async def _drop_reason(self, graph: TaskGraph) -> str | None:
        """Conditions that became true after the task was scheduled."""
        automation = graph.automation
        if automation is not None:
            if automation.excluded_event_ids and await self.triggers.has_any_event(
                graph.contact.id, automation.excluded_event_ids
            ):
                return "excluded_event"
            if (
                not graph.contact.subscribed
                and automation.template.type == TemplateType.MARKETING
            ):
                return "unsubscribed"

        if graph.campaign is not None and not graph.contact.subscribed:
            return "unsubscribed"

        return None

    def _compose(self, graph: TaskGraph) -> OutboundEmail:
        if graph.automation is not None:
            return compose_automation_email(
                graph.project, graph.contact, graph.automation.template, graph.automation.id
            )
        return compose_campaign_email(graph.project, graph.contact, graph.campaign)

    async def _execute_task(self, task: Task) -> None:
        # The batch was read before the lock; another worker may have finished it since
        if not await self.tasks.exists(task.id):
            self.job_metrics.record_skipped_retired(task.id)
            return

        graph = await self._load_graph(task)

        if graph.project is None:
            removed = await self.tasks.delete_for_project(graph.contact.project_id)
            self.job_metrics.record_orphan_cleanup(graph.contact.project_id, removed)
            return

        reason = await self._drop_reason(graph)
        if reason:
            await self._retire(task)
            self.job_metrics.record_dropped(task.id, reason)
            return

        idempotency_key = f"task:{task.id}"
        previous = await self.ledger.lookup(idempotency_key)
        if previous:
            # Sent on an earlier tick whose delete never landed
            self.job_metrics.record_deduplicated(task.id, previous)
            await self._retire(task)
            return

        email = self._compose(graph)

        start_time = time.time()
        message_id = await asyncio.wait_for(
            self.dispatcher.send(
                sender_email=email.sender_email,
                sender_name=email.sender_name,
                to=email.to,
                subject=email.subject,
                html=email.html,
                idempotency_key=idempotency_key,
            ),
            timeout=settings.SEND_TIMEOUT_SECONDS,
        )

        await self.emails.create(
            message_id,
            graph.contact.id,
            automation_id=email.automation_id,
            campaign_id=email.campaign_id,
        )
        self.job_metrics.record_sent(task.id, message_id, (time.time() - start_time) * 1000)

        await self._retire(task)

    async def _retire(self, task: Task) -> None:
        """Best-effort delete; the send ledger covers a delete that never lands."""
        try:
            deleted = await self.tasks.delete(task.id)
            if not deleted:
                logger.warning("Task already removed", task_id=str(task.id))
        except Exception as e:
            logger.error(
                "Failed to delete task after processing",
                task_id=str(task.id),
                error=str(e),
                error_type=type(e).__name__,
            )

    def get_job_status(self) -> dict:
        return {
            "job_name": "task_scheduler",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "poll_interval_seconds": settings.TASK_POLL_INTERVAL_SECONDS,
            "lock_ttl_seconds": settings.TASK_LOCK_TTL_SECONDS,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }


# Singleton instance for application use
task_scheduler_job = TaskSchedulerJob()


async def run_task_scheduler_job() -> dict:
    """Run a single iteration of the task scheduler."""
    return await task_scheduler_job.run_once()


async def start_task_scheduler():
    """
    Poll for due tasks forever.

    Stands in for the external clock; POST /tasks may run alongside it.
    """
    logger.info(
        "Starting task scheduler", interval_seconds=settings.TASK_POLL_INTERVAL_SECONDS
    )

    while True:
        try:
            metrics = await run_task_scheduler_job()

            if not metrics.get("skipped", False) and metrics.get("tasks_fetched"):
                logger.info("Task scheduler cycle completed", **metrics)

            await asyncio.sleep(settings.TASK_POLL_INTERVAL_SECONDS)

        except TaskSchedulerJobError as e:
            logger.error("Task scheduler cycle failed", error=e.message, operation=e.operation)
            await asyncio.sleep(settings.TASK_POLL_INTERVAL_SECONDS)
