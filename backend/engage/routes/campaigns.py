# /engage/routes/campaigns.py

import logging
from fastapi import APIRouter, Depends, HTTPException, status

from engage.campaigns.best_time import get_best_send_time
from engage.campaigns.cost import estimate_campaign_cost, format_cost_inr
from engage.campaigns.smart_window import count_in_window_customers
from engage.config.settings import settings
from engage.dependencies.tenant import get_tenant_id
from engage.models.api import APIResponse, CampaignCreateRequest, CostEstimateRequest, FollowUpCreateRequest, ScheduleCampaignRequest
from engage.models.campaign import Campaign, CampaignFollowUp, CampaignQueueItem, CampaignStatus
from engage.models.common import utc_now
from engage.services.cache_service import cache_service
from engage.services.db_service import db_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/campaigns",
    tags=["Campaigns"]
)


async def _get_campaign_or_404(campaign_id: str, store_id: str) -> Campaign:
    document = await db_service.get_campaign(campaign_id, store_id)
    if not document:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Campaign not found")
    return Campaign.model_validate(document)


@router.post("/", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign(body: CampaignCreateRequest, store_id: str = Depends(get_tenant_id)):
    campaign = Campaign(store_id=store_id, **body.model_dump())
    await db_service.create_campaign(campaign.model_dump())
    logger.info(f"Campaign {campaign.id} created for store {store_id}")
    return APIResponse(
        success=True,
        message="Campaign created",
        data={"campaign": campaign.model_dump(mode="json")},
        version=settings.api_version
    )


@router.get("/", response_model=APIResponse)
async def list_campaigns(store_id: str = Depends(get_tenant_id)):
    campaigns = await db_service.list_campaigns(store_id)
    return APIResponse(success=True, message="Campaigns retrieved", data={"campaigns": campaigns}, version=settings.api_version)


@router.get("/best-time", response_model=APIResponse)
async def best_send_time(store_id: str = Depends(get_tenant_id)):
    # Cached per store for an hour.
    result = await cache_service.get_or_set(f"best_send_time:{store_id}", lambda: get_best_send_time(store_id), ttl=3600)
    return APIResponse(success=True, message="Best send time calculated", data=result, version=settings.api_version)


@router.post("/estimate", response_model=APIResponse)
async def estimate_cost(body: CostEstimateRequest, store_id: str = Depends(get_tenant_id)):
    """Cost estimate; audience and window sizes default to the store's contacts."""
    audience_size = body.audience_size
    in_window = body.in_window_count
    if audience_size is None or in_window is None:
        window = await count_in_window_customers(store_id, utc_now())
        if audience_size is None:
            audience_size = window["total"]
        if in_window is None:
            ratio = window["in_window"] / window["total"] if window["total"] else 0.0
            in_window = round(audience_size * ratio)

    estimate = estimate_campaign_cost(
        audience_size,
        in_window,
        [f.model_dump() for f in body.follow_ups],
        body.use_smart_window,
    )
    estimate["formatted_total"] = format_cost_inr(estimate["total_cost"])
    estimate["formatted_savings"] = format_cost_inr(estimate["total_savings"])
    return APIResponse(success=True, message="Cost estimated", data=estimate, version=settings.api_version)


@router.post("/{campaign_id}/schedule", response_model=APIResponse)
async def schedule_campaign(campaign_id: str, body: ScheduleCampaignRequest, store_id: str = Depends(get_tenant_id)):
    campaign = await _get_campaign_or_404(campaign_id, store_id)
    if campaign.status not in (CampaignStatus.DRAFT, CampaignStatus.PAUSED, CampaignStatus.FAILED):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Campaign is already {campaign.status.value}")

    scheduled_at = body.scheduled_at or utc_now()
    item = CampaignQueueItem(store_id=store_id, campaign_id=campaign_id, scheduled_at=scheduled_at)
    await db_service.enqueue_campaign(item.model_dump())
    await db_service.update_campaign(campaign_id, {"status": CampaignStatus.SCHEDULED.value, "scheduled_at": scheduled_at})
    logger.info(f"Campaign {campaign_id} queued for {scheduled_at.isoformat()}")
    return APIResponse(
        success=True,
        message="Campaign scheduled",
        data={"campaign_id": campaign_id, "queue_item_id": item.id, "scheduled_at": scheduled_at.isoformat()},
        version=settings.api_version
    )


@router.post("/{campaign_id}/follow-ups", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
async def create_follow_up(campaign_id: str, body: FollowUpCreateRequest, store_id: str = Depends(get_tenant_id)):
    await _get_campaign_or_404(campaign_id, store_id)
    existing = await db_service.list_follow_ups(campaign_id)
    if any(step.get("step_index") == body.step_index for step in existing):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Step {body.step_index} already exists")

    follow_up = CampaignFollowUp(store_id=store_id, campaign_id=campaign_id, **body.model_dump())
    await db_service.create_follow_up(follow_up.model_dump())
    return APIResponse(
        success=True,
        message="Follow-up created",
        data={"follow_up": follow_up.model_dump(mode="json")},
        version=settings.api_version
    )


@router.get("/{campaign_id}/follow-ups", response_model=APIResponse)
async def list_follow_ups(campaign_id: str, store_id: str = Depends(get_tenant_id)):
    await _get_campaign_or_404(campaign_id, store_id)
    follow_ups = await db_service.list_follow_ups(campaign_id)
    return APIResponse(success=True, message="Follow-ups retrieved", data={"follow_ups": follow_ups}, version=settings.api_version)
