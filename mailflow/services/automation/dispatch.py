"""Route a fire decision to an immediate send or a delayed task."""

from datetime import datetime, timedelta

from mailflow.models.domain.automation_domain import (
    DeferredSend,
    FireDecision,
    ImmediateSend,
    NewTask,
    Project,
)
from mailflow.services.automation.matcher import AutomationConfigurationError
from mailflow.services.email.composer import compose_automation_email


def decide(decision: FireDecision, project: Project, now: datetime) -> ImmediateSend | DeferredSend:
    """
    Zero delay renders now; anything else becomes a task.

    Delayed sends are rendered by the scheduler so the contact's metadata is
    as fresh as possible at send time.
    """
    automation = decision.automation

    if automation.delay_minutes > 0:
        return DeferredSend(
            task=NewTask(
                contact_id=decision.contact.id,
                automation_id=automation.id,
                due_at=now + timedelta(minutes=automation.delay_minutes),
            )
        )

    if automation.template is None:
        raise AutomationConfigurationError(
            "Automation has no template", automation_id=str(automation.id)
        )

    return ImmediateSend(
        email=compose_automation_email(
            project, decision.contact, automation.template, automation.id
        )
    )
