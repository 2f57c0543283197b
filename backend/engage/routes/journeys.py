# /engage/routes/journeys.py

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from engage.config.settings import settings
from engage.dependencies.tenant import get_tenant_id
from engage.journeys.engine import run_journey_engine
from engage.journeys.executor import start_journey_execution
from engage.journeys.trigger_matcher import can_enter_journey
from engage.journeys.validator import validate_journey
from engage.models.api import APIResponse, JourneyCreateRequest, JourneyStatusRequest, ManualEnrollRequest
from engage.models.common import utc_now
from engage.models.journey import Journey, JourneyStatus
from engage.services.db_service import db_service

router = APIRouter(
    prefix="/journeys",
    tags=["Journeys"]
)

log = structlog.get_logger(__name__)


async def _get_journey_or_404(journey_id: str, store_id: str) -> Journey:
    document = await db_service.get_journey(journey_id, store_id)
    if not document:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Journey not found")
    return Journey.model_validate(document)


@router.post("/", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
async def create_journey(body: JourneyCreateRequest, store_id: str = Depends(get_tenant_id)):
    journey = Journey(store_id=store_id, **body.model_dump())
    result = validate_journey(journey)
    if not result["is_valid"]:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error_code": result["error_code"], "message": result["message"]}
        )

    await db_service.create_journey(journey.model_dump())
    log.info("Journey created.", journey_id=journey.id, store_id=store_id)
    return APIResponse(
        success=True,
        message="Journey created",
        data={"journey": journey.model_dump(mode="json")},
        version=settings.api_version
    )


@router.get("/", response_model=APIResponse)
async def list_journeys(store_id: str = Depends(get_tenant_id)):
    journeys = await db_service.list_journeys(store_id)
    return APIResponse(success=True, message="Journeys retrieved", data={"journeys": journeys}, version=settings.api_version)


@router.post("/run", response_model=APIResponse)
async def run_engine(
    dry_run: bool = Query(True),
    include_test: bool = Query(False),
    store_id: str = Depends(get_tenant_id)
):
    """Run the batch trigger pass for this store on demand (dry run by default)."""
    result = await run_journey_engine(store_id, utc_now(), include_test=include_test, dry_run=dry_run)
    return APIResponse(success=True, message="Journey engine run complete", data=dict(result), version=settings.api_version)


@router.post("/{journey_id}/status", response_model=APIResponse)
async def update_journey_status(journey_id: str, body: JourneyStatusRequest, store_id: str = Depends(get_tenant_id)):
    journey = await _get_journey_or_404(journey_id, store_id)
    if body.status == JourneyStatus.ACTIVE:
        result = validate_journey(journey)
        if not result["is_valid"]:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"error_code": result["error_code"], "message": result["message"]}
            )

    await db_service.update_journey(journey_id, store_id, {"status": body.status.value})
    log.info("Journey status changed.", journey_id=journey_id, status=body.status.value)
    return APIResponse(
        success=True,
        message=f"Journey is now {body.status.value}",
        data={"journey_id": journey_id, "status": body.status.value},
        version=settings.api_version
    )


@router.get("/{journey_id}/enrollments", response_model=APIResponse)
async def list_enrollments(
    journey_id: str,
    limit: int = Query(50, ge=1, le=500),
    store_id: str = Depends(get_tenant_id)
):
    await _get_journey_or_404(journey_id, store_id)
    enrollments = await db_service.list_enrollments(store_id, journey_id, limit)
    return APIResponse(success=True, message="Enrollments retrieved", data={"enrollments": enrollments}, version=settings.api_version)


@router.post("/{journey_id}/enroll", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
async def enroll_customer(journey_id: str, body: ManualEnrollRequest, store_id: str = Depends(get_tenant_id)):
    journey = await _get_journey_or_404(journey_id, store_id)
    if journey.status != JourneyStatus.ACTIVE:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Journey is not active")

    now = utc_now()
    if not await can_enter_journey(journey, body.customer_id, now):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Customer cannot re-enter this journey")

    known = await db_service.get_customer(store_id, body.customer_id) or {}
    customer = {**known, **body.model_dump(exclude_none=True), "id": body.customer_id}
    enrollment = await start_journey_execution(journey, customer, {"type": "manual", "payload": {"customer": customer}}, now)
    return APIResponse(
        success=True,
        message="Customer enrolled",
        data={"enrollment": enrollment.model_dump(mode="json")},
        version=settings.api_version
    )
