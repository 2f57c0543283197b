# /engage/routes/public.py

from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from engage.config.settings import settings
from engage.utils.dependencies import verify_metrics_access
from engage.services.db_service import db_service
from engage.services.cache_service import cache_service
from engage.services.whatsapp_service import whatsapp_service
from engage.models.api import APIResponse

# Unauthenticated endpoints: health probes and the (optionally key protected)
# Prometheus metrics.

router = APIRouter()


@router.get("/")
async def root():
    return {
        "service": "Engage journeys & campaigns",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check():
    if not await db_service.health_check():
        raise HTTPException(status_code=503, detail="Service not ready: database unavailable")
    return {"status": "ready"}


@router.get("/health/detailed", response_model=APIResponse, tags=["Admin"])
async def comprehensive_health_check():
    health_status = {"status": "healthy", "services": {}}

    if await db_service.health_check():
        health_status["services"]["database"] = "connected"
    else:
        health_status["services"]["database"] = "error"
        health_status["status"] = "degraded"

    try:
        await cache_service.redis.ping()
        health_status["services"]["cache"] = "connected"
    except Exception:
        health_status["services"]["cache"] = "error"
        health_status["status"] = "degraded"

    health_status["services"]["whatsapp"] = "configured" if whatsapp_service.is_configured else "not_configured"
    health_status["services"]["shopify"] = "configured" if settings.shopify_access_token else "not_configured"

    return APIResponse(
        success=True,
        message="Comprehensive health status retrieved.",
        data=health_status,
        version=settings.api_version
    )


@router.get("/metrics", tags=["Monitoring"])
async def metrics(_: bool = Depends(verify_metrics_access)):
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
