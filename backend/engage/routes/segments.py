# /engage/routes/segments.py

from fastapi import APIRouter, Depends, status

from engage.config.settings import settings
from engage.dependencies.tenant import get_tenant_id
from engage.models.api import APIResponse, SegmentCreateRequest, SegmentPreviewRequest
from engage.models.common import utc_now
from engage.models.segment import Segment
from engage.segments.evaluator import filter_customers
from engage.services.db_service import db_service

router = APIRouter(
    prefix="/segments",
    tags=["Segments"]
)


@router.post("/", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
async def create_segment(body: SegmentCreateRequest, store_id: str = Depends(get_tenant_id)):
    now = utc_now()
    segment = Segment(store_id=store_id, **body.model_dump())
    customers = await db_service.get_customers(store_id)
    matched = customers if segment.targets_everyone else filter_customers(customers, segment.condition_groups, now)
    segment.customer_count = len(matched)
    segment.needs_update = False
    segment.last_evaluated_at = now

    await db_service.create_segment(segment.model_dump())
    return APIResponse(
        success=True,
        message="Segment created",
        data={"segment": segment.model_dump(mode="json")},
        version=settings.api_version
    )


@router.get("/", response_model=APIResponse)
async def list_segments(store_id: str = Depends(get_tenant_id)):
    segments = await db_service.list_segments(store_id)
    return APIResponse(success=True, message="Segments retrieved", data={"segments": segments}, version=settings.api_version)


@router.post("/preview", response_model=APIResponse)
async def preview_segment(body: SegmentPreviewRequest, store_id: str = Depends(get_tenant_id)):
    """Count (and sample) the customers a set of condition groups would match."""
    customers = await db_service.get_customers(store_id)
    matched = filter_customers(customers, body.condition_groups, utc_now())
    sample = [
        {"id": c.get("id"), "first_name": c.get("first_name"), "last_name": c.get("last_name"), "email": c.get("email")}
        for c in matched[:10]
    ]
    return APIResponse(
        success=True,
        message="Segment preview",
        data={"count": len(matched), "total": len(customers), "sample": sample},
        version=settings.api_version
    )
