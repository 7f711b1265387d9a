"""
Spread a bulk send over time.

Every ``batch_size`` recipients push the due time one minute further out, so
the delivery provider sees at most ``batch_size`` sends per minute without a
rate limiter at dispatch time.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from uuid import UUID

from mailflow.config import settings
from mailflow.models.domain.automation_domain import NewTask


def plan(
    recipients: Sequence[UUID],
    base_delay: int,
    now: datetime,
    campaign_id: UUID,
    batch_size: int | None = None,
) -> list[NewTask]:
    """One task per recipient, in recipient order."""
    size = settings.CAMPAIGN_BATCH_SIZE if batch_size is None else batch_size
    if size <= 0:
        raise ValueError("batch_size must be positive")
    if base_delay < 0:
        raise ValueError("base_delay cannot be negative")

    return [
        NewTask(
            contact_id=contact_id,
            campaign_id=campaign_id,
            due_at=now + timedelta(minutes=base_delay + index // size),
        )
        for index, contact_id in enumerate(recipients)
    ]
