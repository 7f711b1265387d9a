"""Live campaign delivery: mark delivered, create tracking events, plan tasks."""

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import Project
from mailflow.repositories.campaign_repository import CampaignRepository, campaign_repository
from mailflow.repositories.event_repository import EventRepository, event_repository
from mailflow.repositories.task_repository import TaskRepository, task_repository
from mailflow.services.automation.batch_planner import plan
from mailflow.utils.time import utc_now

logger = get_logger(__name__)

SLUG_STRIP_PATTERN = re.compile(r"[.,/#!$%^&*;:{}=\-_`~()]")


class CampaignServiceError(Exception):
    def __init__(self, message: str, campaign_id: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.message = message
        self.operation = "schedule_campaign"
        self.campaign_id = campaign_id
        self.recoverable = recoverable


class CampaignNotFoundError(CampaignServiceError):
    """Campaign missing or owned by another project."""


@dataclass(slots=True, frozen=True)
class CampaignScheduleResult:
    campaign_id: UUID
    tasks_created: int
    first_due_at: datetime
    last_due_at: datetime


def campaign_event_slug(subject: str) -> str:
    return SLUG_STRIP_PATTERN.sub("", subject.lower()).replace(" ", "-")


class CampaignService:
    def __init__(
        self,
        campaigns: CampaignRepository | None = None,
        events: EventRepository | None = None,
        tasks: TaskRepository | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.campaigns = campaigns or campaign_repository
        self.events = events or event_repository
        self.tasks = tasks or task_repository
        self.clock = clock

    async def schedule(
        self, project: Project, campaign_id: UUID, delay: int = 0
    ) -> CampaignScheduleResult:
        """
        Queue one task per recipient, spaced by the batch planner.

        Raises:
            CampaignNotFoundError: campaign does not exist in this project
            CampaignServiceError: campaign has no recipients
        """
        campaign = await self.campaigns.get(campaign_id)
        if campaign is None or campaign.project_id != project.id:
            raise CampaignNotFoundError("Campaign not found", campaign_id=str(campaign_id))

        recipients = await self.campaigns.recipient_ids(campaign.id)
        if not recipients:
            raise CampaignServiceError("No recipients found", campaign_id=str(campaign.id))

        now = self.clock()
        await self.campaigns.mark_delivered(campaign.id, now)

        slug = campaign_event_slug(campaign.subject)
        for suffix in ("campaign-delivered", "campaign-opened"):
            await self.events.create(project.id, f"{slug}-{suffix}", campaign_id=campaign.id)

        planned = plan(recipients, delay, now, campaign.id)
        created = await self.tasks.create_many(planned)

        logger.info(
            "Campaign scheduled",
            project_id=str(project.id),
            campaign_id=str(campaign.id),
            recipients=len(recipients),
            tasks_created=created,
            base_delay=delay,
        )

        return CampaignScheduleResult(
            campaign_id=campaign.id,
            tasks_created=created,
            first_due_at=planned[0].due_at,
            last_due_at=planned[-1].due_at,
        )


campaign_service = CampaignService()
