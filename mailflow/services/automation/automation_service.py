"""
Automation runner.

Called after an event trigger has been appended. Loads the automations that
watch the event and the contact's relevant history, runs the matcher, records
completion markers with a conditional insert, and then either sends
immediately or enqueues a delayed task.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import (
    Contact,
    DeferredSend,
    Event,
    FireDecision,
    Project,
    Trigger,
)
from mailflow.repositories.automation_repository import (
    AutomationRepository,
    automation_repository,
)
from mailflow.repositories.email_repository import EmailRepository, email_repository
from mailflow.repositories.task_repository import TaskRepository, task_repository
from mailflow.repositories.trigger_repository import TriggerRepository, trigger_repository
from mailflow.services.automation.dispatch import decide
from mailflow.services.automation.matcher import evaluate
from mailflow.services.email.dispatcher import (
    EmailDeliveryError,
    EmailDispatcher,
    email_dispatcher,
)
from mailflow.utils.time import utc_now

logger = get_logger(__name__)


@dataclass
class AutomationRunResult:
    sent: list[str] = field(default_factory=list)
    scheduled: int = 0
    suppressed: int = 0
    lost_races: int = 0
    misconfigured: int = 0
    failed: int = 0

    @property
    def fired(self) -> int:
        return len(self.sent) + self.scheduled


class AutomationService:
    def __init__(
        self,
        automations: AutomationRepository | None = None,
        triggers: TriggerRepository | None = None,
        tasks: TaskRepository | None = None,
        emails: EmailRepository | None = None,
        dispatcher: EmailDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.automations = automations or automation_repository
        self.triggers = triggers or trigger_repository
        self.tasks = tasks or task_repository
        self.emails = emails or email_repository
        self.dispatcher = dispatcher or email_dispatcher
        self.clock = clock

    async def handle_event(
        self, project: Project, contact: Contact, event: Event
    ) -> AutomationRunResult:
        """
        Evaluate and dispatch every automation requiring ``event``.

        A failed immediate send does not stop the remaining automations; the
        first delivery error is raised once all of them have been handled.

        Raises:
            EmailDeliveryError: an immediate send failed; not retried here
            DatabaseError: a store write failed
        """
        result = AutomationRunResult()

        automations = await self.automations.find_requiring(event.id)
        if not automations:
            return result

        relevant_events = set()
        for automation in automations:
            relevant_events |= automation.required_event_ids | automation.excluded_event_ids

        history = await self.triggers.find_for_contact(
            contact.id,
            event_ids=relevant_events,
            automation_ids=[a.id for a in automations],
        )
        now = self.clock()

        match = evaluate(contact, event, history, automations, now)
        result.misconfigured = len(match.misconfigured)
        decisions = {d.automation.id: d for d in match.decisions}
        delivery_error: EmailDeliveryError | None = None

        for marker in match.completions:
            completion = await self.triggers.create_completion(marker)
            if completion is None:
                # Another handler closed this round between our read and write
                result.lost_races += 1
                continue

            logger.info(
                "Automation completed",
                automation_id=str(marker.automation_id),
                contact_id=str(contact.id),
                round_key=marker.round_key,
            )

            decision = decisions.get(marker.automation_id)
            if decision is None:
                result.suppressed += 1
                continue

            try:
                await self._dispatch(project, decision, completion, now, result)
            except EmailDeliveryError as e:
                result.failed += 1
                logger.error(
                    "Automation send failed",
                    automation_id=str(marker.automation_id),
                    contact_id=str(contact.id),
                    error=e.message,
                )
                delivery_error = delivery_error or e

        if delivery_error is not None:
            raise delivery_error

        return result

    async def _dispatch(
        self,
        project: Project,
        decision: FireDecision,
        completion: Trigger,
        now: datetime,
        result: AutomationRunResult,
    ) -> None:
        automation = decision.automation
        outcome = decide(decision, project, now)

        if isinstance(outcome, DeferredSend):
            task = await self.tasks.create(
                contact_id=outcome.task.contact_id,
                due_at=outcome.task.due_at,
                automation_id=outcome.task.automation_id,
            )
            result.scheduled += 1
            logger.info(
                "Automation send scheduled",
                task_id=str(task.id),
                automation_id=str(automation.id),
                due_at=task.due_at.isoformat(),
            )
            return

        email = outcome.email
        message_id = await self.dispatcher.send(
            sender_email=email.sender_email,
            sender_name=email.sender_name,
            to=email.to,
            subject=email.subject,
            html=email.html,
            idempotency_key=f"completion:{completion.id}",
        )
        await self.emails.create(message_id, decision.contact.id, automation_id=automation.id)
        result.sent.append(message_id)


automation_service = AutomationService()
