import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

import pytest

from mailflow.jobs.task_scheduler_job import TaskSchedulerJob
from mailflow.models.domain.automation_domain import (
    Automation,
    Campaign,
    CompletionMarker,
    Contact,
    Email,
    Event,
    NewTask,
    Project,
    Task,
    Template,
    TemplateStyle,
    TemplateType,
    Trigger,
)
from mailflow.services.automation.automation_service import AutomationService
from mailflow.services.campaign_service import CampaignService
from mailflow.services.email.dispatcher import EmailDeliveryError
from mailflow.services.email.send_ledger import SendLedger
from mailflow.services.event_service import EventService
from mailflow.services.lock_store import LockStore

START = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        if key in self.store:
            return False
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def delete_if_equals(self, key: str, value: str) -> bool:
        if self.store.get(key) != value:
            return False
        return await self.delete(key)

    async def delete(self, key: str) -> bool:
        self.ttls.pop(key, None)
        return self.store.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return key in self.store

    def expire(self, key: str) -> None:
        """Simulate TTL expiry."""
        self.store.pop(key, None)
        self.ttls.pop(key, None)


@dataclass
class InMemoryStore:
    projects: dict[UUID, Project] = field(default_factory=dict)
    contacts: dict[UUID, Contact] = field(default_factory=dict)
    events: dict[UUID, Event] = field(default_factory=dict)
    automations: dict[UUID, Automation] = field(default_factory=dict)
    triggers: list[Trigger] = field(default_factory=list)
    tasks: dict[UUID, Task] = field(default_factory=dict)
    emails: list[Email] = field(default_factory=list)
    campaigns: dict[UUID, Campaign] = field(default_factory=dict)
    recipients: dict[UUID, list[UUID]] = field(default_factory=dict)


class FakeTriggerRepository:
    def __init__(self, store: InMemoryStore, clock: FakeClock):
        self.store = store
        self.clock = clock
        self.completion_attempts = 0

    async def create_event_trigger(self, contact_id, event_id, created_at=None) -> Trigger:
        trigger = Trigger(
            id=uuid4(),
            contact_id=contact_id,
            event_id=event_id,
            created_at=created_at or self.clock(),
        )
        self.store.triggers.append(trigger)
        return trigger

    async def create_completion(self, marker: CompletionMarker) -> Trigger | None:
        self.completion_attempts += 1
        for existing in self.store.triggers:
            if (
                existing.contact_id == marker.contact_id
                and existing.automation_id == marker.automation_id
                and existing.round_key == marker.round_key
            ):
                return None
        trigger = Trigger(
            id=uuid4(),
            contact_id=marker.contact_id,
            automation_id=marker.automation_id,
            round_key=marker.round_key,
            created_at=marker.created_at,
        )
        self.store.triggers.append(trigger)
        return trigger

    async def find_for_contact(self, contact_id, event_ids=None, automation_ids=None):
        rows = [t for t in self.store.triggers if t.contact_id == contact_id]
        if event_ids is not None or automation_ids is not None:
            events = set(event_ids or [])
            automations = set(automation_ids or [])
            rows = [t for t in rows if t.event_id in events or t.automation_id in automations]
        return sorted(rows, key=lambda t: t.created_at)

    async def has_any_event(self, contact_id, event_ids) -> bool:
        wanted = set(event_ids)
        return any(
            t.contact_id == contact_id and t.event_id in wanted for t in self.store.triggers
        )

    def completions(self, contact_id=None, automation_id=None) -> list[Trigger]:
        return [
            t
            for t in self.store.triggers
            if t.automation_id is not None
            and (contact_id is None or t.contact_id == contact_id)
            and (automation_id is None or t.automation_id == automation_id)
        ]


class FakeAutomationRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def find_requiring(self, event_id) -> list[Automation]:
        return [a for a in self.store.automations.values() if event_id in a.required_event_ids]

    async def get(self, automation_id) -> Automation | None:
        return self.store.automations.get(automation_id)


class FakeTaskRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store
        self.fail_find = False
        self.fail_delete = False
        self.deleted: list[UUID] = []

    async def create(self, contact_id, due_at, automation_id=None, campaign_id=None) -> Task:
        task = Task(
            id=uuid4(),
            contact_id=contact_id,
            automation_id=automation_id,
            campaign_id=campaign_id,
            due_at=due_at,
        )
        self.store.tasks[task.id] = task
        return task

    async def create_many(self, tasks: list[NewTask]) -> int:
        for new in tasks:
            await self.create(new.contact_id, new.due_at, new.automation_id, new.campaign_id)
        return len(tasks)

    async def exists(self, task_id) -> bool:
        return task_id in self.store.tasks

    async def delete(self, task_id) -> bool:
        if self.fail_delete:
            raise RuntimeError("delete failed")
        self.deleted.append(task_id)
        return self.store.tasks.pop(task_id, None) is not None

    async def delete_for_project(self, project_id) -> int:
        doomed = [
            t.id
            for t in self.store.tasks.values()
            if self.store.contacts[t.contact_id].project_id == project_id
        ]
        for task_id in doomed:
            del self.store.tasks[task_id]
        return len(doomed)

    async def find_due(self, now) -> list[Task]:
        if self.fail_find:
            raise RuntimeError("database unavailable")
        return sorted(
            (t for t in self.store.tasks.values() if t.due_at <= now), key=lambda t: t.due_at
        )


class FakeContactRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get(self, contact_id) -> Contact | None:
        return self.store.contacts.get(contact_id)

    async def find_by_email(self, project_id, email) -> Contact | None:
        for contact in self.store.contacts.values():
            if contact.project_id == project_id and contact.email == email:
                return contact
        return None

    async def create(self, project_id, email, subscribed=True, metadata=None) -> Contact:
        contact = Contact(
            id=uuid4(),
            project_id=project_id,
            email=email,
            subscribed=subscribed,
            metadata=dict(metadata or {}),
        )
        self.store.contacts[contact.id] = contact
        return contact

    async def update_subscribed(self, contact_id, subscribed) -> Contact | None:
        contact = self.store.contacts.get(contact_id)
        if contact is None:
            return None
        updated = contact.model_copy(update={"subscribed": subscribed})
        self.store.contacts[contact_id] = updated
        return updated

    async def update_metadata(self, contact_id, values) -> Contact | None:
        contact = self.store.contacts.get(contact_id)
        if contact is None:
            return None
        updated = contact.model_copy(update={"metadata": {**contact.metadata, **values}})
        self.store.contacts[contact_id] = updated
        return updated


class FakeProjectRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get(self, project_id) -> Project | None:
        return self.store.projects.get(project_id)

    async def find_by_key(self, key) -> Project | None:
        for project in self.store.projects.values():
            if key in (project.secret_key, project.public_key):
                return project
        return None


class FakeEventRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def find_by_name(self, project_id, name) -> Event | None:
        for event in self.store.events.values():
            if event.project_id == project_id and event.name == name:
                return event
        return None

    async def create(self, project_id, name, campaign_id=None, template_id=None) -> Event:
        existing = await self.find_by_name(project_id, name)
        if existing:
            return existing
        event = Event(
            id=uuid4(),
            project_id=project_id,
            name=name,
            campaign_id=campaign_id,
            template_id=template_id,
        )
        self.store.events[event.id] = event
        return event


class FakeEmailRepository:
    def __init__(self, store: InMemoryStore, clock: FakeClock):
        self.store = store
        self.clock = clock

    async def create(self, message_id, contact_id, automation_id=None, campaign_id=None) -> Email:
        email = Email(
            id=uuid4(),
            message_id=message_id,
            contact_id=contact_id,
            automation_id=automation_id,
            campaign_id=campaign_id,
            created_at=self.clock(),
        )
        self.store.emails.append(email)
        return email


class FakeCampaignRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get(self, campaign_id) -> Campaign | None:
        return self.store.campaigns.get(campaign_id)

    async def recipient_ids(self, campaign_id) -> list[UUID]:
        return list(self.store.recipients.get(campaign_id, []))

    async def mark_delivered(self, campaign_id, delivered_at) -> Campaign | None:
        campaign = self.store.campaigns.get(campaign_id)
        if campaign is None:
            return None
        updated = campaign.model_copy(update={"status": "DELIVERED", "delivered_at": delivered_at})
        self.store.campaigns[campaign_id] = updated
        return updated


class FakeDispatcher:
    """Records sends; mirrors the real dispatcher's ledger write on success."""

    def __init__(self, ledger: SendLedger | None = None):
        self.ledger = ledger
        self.sent: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None
        self.delay_seconds: float = 0

    async def send(self, sender_email, sender_name, to, subject, html, idempotency_key=None) -> str:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise self.fail_with
        message_id = f"msg-{len(self.sent) + 1}"
        self.sent.append(
            {
                "sender_email": sender_email,
                "sender_name": sender_name,
                "to": to,
                "subject": subject,
                "html": html,
                "idempotency_key": idempotency_key,
                "message_id": message_id,
            }
        )
        if idempotency_key and self.ledger is not None:
            await self.ledger.record(idempotency_key, message_id)
        return message_id


@dataclass
class Harness:
    """In-memory wiring of every service against fake stores."""

    clock: FakeClock
    store: InMemoryStore
    redis: FakeRedis
    triggers: FakeTriggerRepository
    automations: FakeAutomationRepository
    tasks: FakeTaskRepository
    contacts: FakeContactRepository
    projects: FakeProjectRepository
    events: FakeEventRepository
    emails: FakeEmailRepository
    campaigns: FakeCampaignRepository
    locks: LockStore
    ledger: SendLedger
    dispatcher: FakeDispatcher
    automation_service: AutomationService
    event_service: EventService
    campaign_service: CampaignService

    def make_scheduler(self, locks: LockStore | None = None) -> TaskSchedulerJob:
        return TaskSchedulerJob(
            tasks=self.tasks,
            contacts=self.contacts,
            projects=self.projects,
            automations=self.automations,
            campaigns=self.campaigns,
            triggers=self.triggers,
            emails=self.emails,
            locks=locks or self.locks,
            ledger=self.ledger,
            dispatcher=self.dispatcher,
            clock=self.clock,
        )

    # -- factories -----------------------------------------------------------

    def add_project(self, verified: bool = True, **overrides) -> Project:
        data = {
            "id": uuid4(),
            "name": "Acme",
            "email": "hello@acme.test" if verified else None,
            "verified": verified,
            "from_name": None,
            "secret_key": f"sk_{uuid4().hex}",
            "public_key": f"pk_{uuid4().hex}",
        }
        data.update(overrides)
        project = Project(**data)
        self.store.projects[project.id] = project
        return project

    def add_contact(self, project: Project, email: str = "ada@example.com", **overrides) -> Contact:
        data = {"id": uuid4(), "project_id": project.id, "email": email, "subscribed": True}
        data.update(overrides)
        contact = Contact(**data)
        self.store.contacts[contact.id] = contact
        return contact

    def add_event(self, project: Project, name: str) -> Event:
        event = Event(id=uuid4(), project_id=project.id, name=name)
        self.store.events[event.id] = event
        return event

    def make_template(
        self,
        project: Project,
        type: TemplateType = TemplateType.MARKETING,
        style: TemplateStyle = TemplateStyle.PLUNK,
        subject: str = "Welcome {{name ?? friend}}",
        body: str = "<p>Hi {{name ?? there}}</p>",
        **overrides,
    ) -> Template:
        return Template(
            id=uuid4(),
            project_id=project.id,
            subject=subject,
            body=body,
            type=type,
            style=style,
            **overrides,
        )

    def add_automation(
        self,
        project: Project,
        required: list[Event],
        excluded: list[Event] | None = None,
        run_once: bool = False,
        delay_minutes: int = 0,
        template: Template | None = None,
        with_template: bool = True,
    ) -> Automation:
        if template is None and with_template:
            template = self.make_template(project)
        automation = Automation(
            id=uuid4(),
            project_id=project.id,
            name="automation",
            required_event_ids=frozenset(e.id for e in required),
            excluded_event_ids=frozenset(e.id for e in excluded or []),
            run_once=run_once,
            delay_minutes=delay_minutes,
            template=template,
        )
        self.store.automations[automation.id] = automation
        return automation

    def add_campaign(self, project: Project, recipients: list[Contact], **overrides) -> Campaign:
        data = {
            "id": uuid4(),
            "project_id": project.id,
            "subject": "Spring Sale!",
            "body": "<p>Hello {{contact_email}}</p>",
        }
        data.update(overrides)
        campaign = Campaign(**data)
        self.store.campaigns[campaign.id] = campaign
        self.store.recipients[campaign.id] = [c.id for c in recipients]
        return campaign

    def add_event_trigger(self, contact: Contact, event: Event, at: datetime | None = None):
        trigger = Trigger(
            id=uuid4(), contact_id=contact.id, event_id=event.id, created_at=at or self.clock()
        )
        self.store.triggers.append(trigger)
        return trigger


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def harness(fake_redis, clock) -> Harness:
    store = InMemoryStore()
    triggers = FakeTriggerRepository(store, clock)
    automations = FakeAutomationRepository(store)
    tasks = FakeTaskRepository(store)
    contacts = FakeContactRepository(store)
    projects = FakeProjectRepository(store)
    events = FakeEventRepository(store)
    emails = FakeEmailRepository(store, clock)
    campaigns = FakeCampaignRepository(store)
    locks = LockStore(client=fake_redis)
    ledger = SendLedger(client=fake_redis)
    dispatcher = FakeDispatcher(ledger=ledger)

    automation_service = AutomationService(
        automations=automations,
        triggers=triggers,
        tasks=tasks,
        emails=emails,
        dispatcher=dispatcher,
        clock=clock,
    )
    event_service = EventService(
        events=events,
        contacts=contacts,
        triggers=triggers,
        automations=automation_service,
        clock=clock,
    )
    campaign_service = CampaignService(
        campaigns=campaigns, events=events, tasks=tasks, clock=clock
    )

    return Harness(
        clock=clock,
        store=store,
        redis=fake_redis,
        triggers=triggers,
        automations=automations,
        tasks=tasks,
        contacts=contacts,
        projects=projects,
        events=events,
        emails=emails,
        campaigns=campaigns,
        locks=locks,
        ledger=ledger,
        dispatcher=dispatcher,
        automation_service=automation_service,
        event_service=event_service,
        campaign_service=campaign_service,
    )


@pytest.fixture
def delivery_error():
    return EmailDeliveryError("provider returned 503", status_code=503)
