# mailflow/routes/events.py
"""Event tracking API."""

from fastapi import APIRouter, Depends, HTTPException, status

from mailflow.auth.verify import project_key_dependency
from mailflow.infrastructure.observability.logging import get_logger
from mailflow.models.api.event_request import TrackEventRequest
from mailflow.models.api.event_response import TrackEventResponse
from mailflow.models.domain.automation_domain import Project
from mailflow.services.email.dispatcher import EmailDeliveryError
from mailflow.services.event_service import EventService, ReservedEventError, event_service

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["events"])


def get_event_service() -> EventService:
    return event_service


@router.post("/track", response_model=TrackEventResponse)
async def track_event(
    request: TrackEventRequest,
    project: Project = Depends(project_key_dependency),
    service: EventService = Depends(get_event_service),
) -> TrackEventResponse:
    """Track an event for a contact and run the automations watching it."""
    try:
        result = await service.track(
            project,
            name=request.event,
            email=request.email,
            data=request.data,
            subscribed=request.subscribed,
        )
    except ReservedEventError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.message) from e
    except EmailDeliveryError as e:
        logger.error(
            "Immediate automation send failed",
            project_id=str(project.id),
            event_name=request.event,
            error=e.message,
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Email delivery failed"
        ) from e

    return TrackEventResponse(
        contact=result.contact_id,
        event=result.event_id,
        timestamp=result.timestamp,
        fired=result.fired,
        scheduled=result.scheduled,
    )
