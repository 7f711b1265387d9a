"""
Automation matcher.

Pure decision function over an already-loaded contact history: which of the
automations watching the incoming event have just had their required set
completed. No I/O happens here; the caller persists the completion markers.

Rounds are implicit. A round opens at the most recent completion marker for
(contact, automation) and closes when every required event has occurred
after it. The round key is the ISO timestamp of that opening marker, or
``"initial"`` before the first completion.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime

from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.domain.automation_domain import (
    Automation,
    CompletionMarker,
    Contact,
    Event,
    FireDecision,
    MatchResult,
    TemplateType,
    Trigger,
)

logger = get_logger(__name__)

INITIAL_ROUND = "initial"


class AutomationConfigurationError(Exception):
    """Automation cannot be evaluated as defined (e.g. no template)."""

    def __init__(self, message: str, automation_id: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.message = message
        self.operation = "evaluate_automation"
        self.automation_id = automation_id
        self.recoverable = recoverable


def _last_completion(automation: Automation, triggers: Sequence[Trigger]) -> Trigger | None:
    last = None
    for trigger in triggers:
        if trigger.automation_id == automation.id:
            if last is None or trigger.created_at >= last.created_at:
                last = trigger
    return last


def round_key_for(completion: Trigger | None) -> str:
    if completion is None:
        return INITIAL_ROUND
    return completion.created_at.isoformat()


def evaluate_automation(
    contact: Contact,
    automation: Automation,
    triggers: Sequence[Trigger],
    now: datetime,
) -> tuple[CompletionMarker | None, bool]:
    """
    Evaluate one automation for one contact.

    Returns ``(marker, send)``. ``marker`` is None when the automation does not
    fire. ``send`` is False when the round completes but the send is withheld
    because the contact unsubscribed from a marketing template.

    Raises:
        AutomationConfigurationError: automation has no template
    """
    if automation.template is None:
        raise AutomationConfigurationError(
            "Automation has no template", automation_id=str(automation.id)
        )

    # Exclusion looks at the whole history, not just the current round
    if automation.excluded_event_ids and any(
        t.event_id in automation.excluded_event_ids for t in triggers
    ):
        return None, False

    last_completion = _last_completion(automation, triggers)
    if automation.run_once and last_completion is not None:
        return None, False

    since = last_completion.created_at if last_completion else None
    seen = {
        t.event_id
        for t in triggers
        if t.event_id is not None
        and t.event_id in automation.required_event_ids
        and (since is None or t.created_at > since)
    }

    if not automation.required_event_ids or seen != automation.required_event_ids:
        return None, False

    marker = CompletionMarker(
        contact_id=contact.id,
        automation_id=automation.id,
        round_key=round_key_for(last_completion),
        created_at=now,
    )

    send = contact.subscribed or automation.template.type != TemplateType.MARKETING
    return marker, send


def evaluate(
    contact: Contact,
    incoming_event: Event,
    triggers: Sequence[Trigger],
    automations: Iterable[Automation],
    now: datetime,
) -> MatchResult:
    """
    Evaluate every automation whose required set contains ``incoming_event``.

    ``triggers`` must be the contact's history in created_at order and must
    already include the incoming event's trigger. A misconfigured automation
    is listed in ``misconfigured`` and does not affect the others.
    """
    result = MatchResult()

    for automation in automations:
        if incoming_event.id not in automation.required_event_ids:
            continue

        try:
            marker, send = evaluate_automation(contact, automation, triggers, now)
        except AutomationConfigurationError as e:
            logger.error(
                "Skipping misconfigured automation",
                automation_id=str(automation.id),
                contact_id=str(contact.id),
                error=e.message,
            )
            result.misconfigured.append(automation.id)
            continue

        if marker is None:
            continue

        result.completions.append(marker)
        if send:
            result.decisions.append(
                FireDecision(contact=contact, automation=automation, completion=marker)
            )
        else:
            result.suppressed.append(marker)
            logger.info(
                "Automation send suppressed for unsubscribed contact",
                contact_id=str(contact.id),
                automation_id=str(automation.id),
            )

    return result
