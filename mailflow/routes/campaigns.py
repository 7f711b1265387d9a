# mailflow/routes/campaigns.py
"""Campaign delivery API."""

from fastapi import APIRouter, Depends, HTTPException, status

from mailflow.auth.verify import secret_key_dependency
from mailflow.models.api.event_request import SendCampaignRequest
from mailflow.models.api.event_response import SendCampaignResponse
from mailflow.models.domain.automation_domain import Project
from mailflow.services.campaign_service import (
    CampaignNotFoundError,
    CampaignService,
    CampaignServiceError,
    campaign_service,
)

router = APIRouter(prefix="/v1/campaigns", tags=["campaigns"])


def get_campaign_service() -> CampaignService:
    return campaign_service


@router.post("/send", response_model=SendCampaignResponse)
async def send_campaign(
    request: SendCampaignRequest,
    project: Project = Depends(secret_key_dependency),
    service: CampaignService = Depends(get_campaign_service),
) -> SendCampaignResponse:
    """Queue a campaign for every recipient, 80 sends per minute."""
    try:
        result = await service.schedule(project, request.id, delay=request.delay)
    except CampaignNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e
    except CampaignServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e

    return SendCampaignResponse(
        campaign=result.campaign_id,
        tasks=result.tasks_created,
        first_due_at=result.first_due_at,
        last_due_at=result.last_due_at,
    )
