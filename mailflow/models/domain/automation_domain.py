from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class TemplateType(StrEnum):
    MARKETING = "MARKETING"
    TRANSACTIONAL = "TRANSACTIONAL"


class TemplateStyle(StrEnum):
    PLUNK = "PLUNK"
    HTML = "HTML"


class Project(BaseModel):
    """Tenant that owns contacts, events and automations."""

    id: UUID
    name: str
    email: str | None = None
    verified: bool = False
    from_name: str | None = None
    secret_key: str
    public_key: str


class Contact(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: UUID
    project_id: UUID
    email: str
    subscribed: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


class Event(BaseModel):
    id: UUID
    project_id: UUID
    name: str
    # Set when the event was generated by a campaign or template send
    campaign_id: UUID | None = None
    template_id: UUID | None = None


class Trigger(BaseModel):
    """
    One fact in a contact's history.

    Event triggers carry ``event_id``; completion markers carry
    ``automation_id`` and the ``round_key`` of the window they closed.
    """

    id: UUID
    contact_id: UUID
    event_id: UUID | None = None
    automation_id: UUID | None = None
    round_key: str | None = None
    created_at: datetime

    @property
    def is_completion(self) -> bool:
        return self.automation_id is not None


class Template(BaseModel):
    id: UUID
    project_id: UUID
    subject: str
    body: str
    type: TemplateType = TemplateType.MARKETING
    style: TemplateStyle = TemplateStyle.PLUNK
    sender_email: str | None = None
    sender_name: str | None = None


class Automation(BaseModel):
    """Send ``template`` once every required event occurred and no excluded one ever did."""

    id: UUID
    project_id: UUID
    name: str
    required_event_ids: frozenset[UUID] = frozenset()
    excluded_event_ids: frozenset[UUID] = frozenset()
    run_once: bool = False
    delay_minutes: int = Field(default=0, ge=0)
    template: Template | None = None


class Campaign(BaseModel):
    id: UUID
    project_id: UUID
    subject: str
    body: str
    style: TemplateStyle = TemplateStyle.PLUNK
    sender_email: str | None = None
    sender_name: str | None = None
    status: str = "DRAFT"
    delivered_at: datetime | None = None


class Task(BaseModel):
    id: UUID
    contact_id: UUID
    automation_id: UUID | None = None
    campaign_id: UUID | None = None
    due_at: datetime


class Email(BaseModel):
    id: UUID
    message_id: str
    contact_id: UUID
    automation_id: UUID | None = None
    campaign_id: UUID | None = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Values passed between the matcher, the decider and the scheduler
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CompletionMarker:
    contact_id: UUID
    automation_id: UUID
    round_key: str
    created_at: datetime


@dataclass(slots=True, frozen=True)
class FireDecision:
    contact: Contact
    automation: Automation
    completion: CompletionMarker


@dataclass(slots=True)
class MatchResult:
    decisions: list[FireDecision] = field(default_factory=list)
    completions: list[CompletionMarker] = field(default_factory=list)
    # Completions whose send was withheld (unsubscribed contact, marketing template)
    suppressed: list[CompletionMarker] = field(default_factory=list)
    # Automations skipped because they cannot be evaluated (no template)
    misconfigured: list[UUID] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class NewTask:
    contact_id: UUID
    due_at: datetime
    automation_id: UUID | None = None
    campaign_id: UUID | None = None


@dataclass(slots=True, frozen=True)
class OutboundEmail:
    """Fully rendered message ready for the dispatcher."""

    sender_email: str
    sender_name: str
    to: str
    subject: str
    html: str
    contact_id: UUID
    automation_id: UUID | None = None
    campaign_id: UUID | None = None


@dataclass(slots=True, frozen=True)
class ImmediateSend:
    email: OutboundEmail


@dataclass(slots=True, frozen=True)
class DeferredSend:
    task: NewTask


@dataclass(slots=True, frozen=True)
class TaskGraph:
    """Everything the scheduler needs to execute one task."""

    task: Task
    contact: Contact
    project: Project | None
    automation: Automation | None = None
    campaign: Campaign | None = None
