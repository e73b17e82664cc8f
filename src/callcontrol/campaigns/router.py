"""
Campaign control API router.

Domain errors (not found, invalid state, missing configuration, credits)
propagate to the application's exception handlers.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status

from callcontrol.campaigns.manager import CampaignManager
from callcontrol.campaigns.models import CampaignStatus
from callcontrol.campaigns.schemas import (
    CallResultSchema,
    CampaignCallsResponse,
    CampaignLaunchRequest,
    CampaignListResponse,
    CampaignResponse,
)
from callcontrol.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])


def get_campaign_manager(request: Request) -> CampaignManager:
    """Dependency returning the process-wide campaign manager."""
    return request.app.state.campaign_manager


Manager = Annotated[CampaignManager, Depends(get_campaign_manager)]


@router.post(
    "",
    response_model=CampaignResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Agent telephony not configured"},
        403: {"description": "Account cannot place calls"},
        404: {"description": "Account not found"},
    },
)
async def launch_campaign(body: CampaignLaunchRequest, manager: Manager) -> CampaignResponse:
    """Create a campaign and start dialing in the background."""
    logger.info(
        "Campaign launch requested",
        extra={"account_id": str(body.account_id), "agent_id": body.agent_id, "contacts": len(body.contacts)},
    )
    campaign = await manager.launch(body)
    return CampaignResponse.model_validate(campaign)


@router.get("", response_model=CampaignListResponse)
async def list_campaigns(
    manager: Manager,
    account_id: UUID | None = None,
    campaign_status: Annotated[CampaignStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> CampaignListResponse:
    campaigns, total = await manager.list(
        account_id=account_id,
        status=campaign_status,
        limit=limit,
        offset=offset,
    )
    return CampaignListResponse(
        items=[CampaignResponse.model_validate(c) for c in campaigns],
        total=total,
    )


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(campaign_id: str, manager: Manager) -> CampaignResponse:
    return CampaignResponse.model_validate(await manager.get(campaign_id))


@router.get("/{campaign_id}/calls", response_model=CampaignCallsResponse)
async def get_campaign_calls(campaign_id: str, manager: Manager) -> CampaignCallsResponse:
    """Per-contact results in launch order; contacts not dialed yet read as pending."""
    details = await manager.call_details(campaign_id)
    return CampaignCallsResponse(
        campaign_id=campaign_id,
        calls=[CallResultSchema.model_validate(d) for d in details],
    )


@router.post("/{campaign_id}/pause", response_model=CampaignResponse)
async def pause_campaign(campaign_id: str, manager: Manager) -> CampaignResponse:
    return CampaignResponse.model_validate(await manager.pause(campaign_id))


@router.post("/{campaign_id}/resume", response_model=CampaignResponse)
async def resume_campaign(campaign_id: str, manager: Manager) -> CampaignResponse:
    return CampaignResponse.model_validate(await manager.resume(campaign_id))


@router.delete("/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_campaign(campaign_id: str, manager: Manager) -> Response:
    await manager.delete(campaign_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
