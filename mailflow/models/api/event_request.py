# mailflow/models/api/event_request.py
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class TrackEventRequest(BaseModel):
    """Body of POST /v1/track."""

    event: str = Field(..., min_length=1, max_length=200, description="Event name")
    email: str = Field(..., pattern=EMAIL_PATTERN, description="Contact email address")
    subscribed: bool | None = Field(
        default=None, description="Set the contact's subscription state when given"
    )
    data: dict[str, Any] | None = Field(
        default=None,
        description='Contact metadata; values may be {"value": ..., "persistent": bool}',
    )


class SendCampaignRequest(BaseModel):
    """Body of POST /v1/campaigns/send."""

    id: UUID = Field(..., description="Campaign ID")
    delay: int = Field(default=0, ge=0, le=10080, description="Minutes before the first batch")
