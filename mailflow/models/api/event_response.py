# mailflow/models/api/event_response.py
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class TrackEventResponse(BaseModel):
    success: bool = True
    contact: UUID
    event: UUID
    timestamp: datetime
    fired: int = 0
    scheduled: int = 0


class SendCampaignResponse(BaseModel):
    success: bool = True
    campaign: UUID
    tasks: int
    first_due_at: datetime
    last_due_at: datetime


class ProcessTasksResponse(BaseModel):
    success: bool = True
