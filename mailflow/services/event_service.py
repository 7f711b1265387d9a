"""
Event ingestion.

Resolves the event and contact for a tracked occurrence, applies metadata,
appends the trigger and hands off to the automation runner.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import Contact, Project
from mailflow.repositories.contact_repository import ContactRepository, contact_repository
from mailflow.repositories.event_repository import EventRepository, event_repository
from mailflow.repositories.trigger_repository import TriggerRepository, trigger_repository
from mailflow.services.automation.automation_service import (
    AutomationService,
    automation_service,
)
from mailflow.utils.time import utc_now

logger = get_logger(__name__)

RESERVED_EVENT_NAMES = frozenset({"subscribe", "unsubscribe"})


class ReservedEventError(Exception):
    """Tracking was attempted with a name the platform reserves."""

    def __init__(self, message: str, event_name: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.message = message
        self.operation = "track_event"
        self.event_name = event_name
        self.recoverable = recoverable


@dataclass(slots=True, frozen=True)
class TrackResult:
    contact_id: UUID
    event_id: UUID
    timestamp: datetime
    fired: int
    scheduled: int


def normalize_event_name(name: str) -> str:
    return name.strip().lower().replace(" ", "-")


def split_metadata(data: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Split tracked metadata into (applied, persistent).

    Entries are plain values or ``{"value": ..., "persistent": bool}``. Every
    value applies to this evaluation; only persistent ones are stored. Plain
    values count as persistent.
    """
    applied: dict[str, Any] = {}
    persistent: dict[str, Any] = {}

    for key, entry in data.items():
        if isinstance(entry, Mapping) and "value" in entry:
            applied[key] = entry["value"]
            if entry.get("persistent", False):
                persistent[key] = entry["value"]
        else:
            applied[key] = entry
            persistent[key] = entry

    return applied, persistent


class EventService:
    def __init__(
        self,
        events: EventRepository | None = None,
        contacts: ContactRepository | None = None,
        triggers: TriggerRepository | None = None,
        automations: AutomationService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.events = events or event_repository
        self.contacts = contacts or contact_repository
        self.triggers = triggers or trigger_repository
        self.automations = automations or automation_service
        self.clock = clock

    async def _resolve_contact(
        self, project: Project, email: str, subscribed: bool | None
    ) -> Contact:
        contact = await self.contacts.find_by_email(project.id, email)

        if contact is None:
            return await self.contacts.create(
                project.id, email, subscribed=True if subscribed is None else subscribed
            )

        if subscribed is not None and contact.subscribed != subscribed:
            updated = await self.contacts.update_subscribed(contact.id, subscribed)
            if updated is not None:
                logger.info(
                    "Contact subscription changed",
                    contact_id=str(contact.id),
                    subscribed=subscribed,
                )
                return updated

        return contact

    async def track(
        self,
        project: Project,
        name: str,
        email: str,
        data: Mapping[str, Any] | None = None,
        subscribed: bool | None = None,
    ) -> TrackResult:
        """
        Record that ``email`` experienced event ``name`` and run automations.

        Raises:
            ReservedEventError: name is ``subscribe`` or ``unsubscribe``
            EmailDeliveryError: an immediate automation send failed
        """
        event_name = normalize_event_name(name)
        if event_name in RESERVED_EVENT_NAMES:
            raise ReservedEventError(
                "subscribe & unsubscribe are reserved event names.", event_name=event_name
            )

        event = await self.events.find_by_name(project.id, event_name)
        if event is None:
            event = await self.events.create(project.id, event_name)
            logger.info("Event created", project_id=str(project.id), event_name=event_name)

        contact = await self._resolve_contact(project, email, subscribed)

        if data:
            applied, persistent = split_metadata(data)
            if persistent:
                stored = await self.contacts.update_metadata(contact.id, persistent)
                if stored is not None:
                    contact = stored
            contact = contact.model_copy(update={"metadata": {**contact.metadata, **applied}})

        now = self.clock()
        await self.triggers.create_event_trigger(contact.id, event.id, created_at=now)

        run = await self.automations.handle_event(project, contact, event)

        logger.info(
            "Event tracked",
            project_id=str(project.id),
            event_name=event.name,
            contact_id=str(contact.id),
            fired=run.fired,
            scheduled=run.scheduled,
        )

        return TrackResult(
            contact_id=contact.id,
            event_id=event.id,
            timestamp=now,
            fired=run.fired,
            scheduled=run.scheduled,
        )


event_service = EventService()
