# /engage/routes/webhooks.py

import json
import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from engage.config.settings import settings
from engage.services.db_service import db_service
from engage.services.webhook_service import (
    SUPPORTED_SHOPIFY_TOPICS, process_shopify_webhook, process_whatsapp_payload,
)
from engage.utils.dependencies import verify_webhook_signature, verify_shopify_signature
from engage.utils.metrics import response_time_histogram
from engage.utils.rate_limiter import limiter

# Inbound webhooks from Meta and Shopify. Signatures are checked by the
# dependencies; the work itself runs as a background task.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)


def _parse_json(body: bytes) -> dict:
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return data


# --- WhatsApp Webhooks ---

@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_verify_token == settings.whatsapp_verify_token and hub_mode in (None, "subscribe"):
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge or "")
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Delivery statuses and inbound messages."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        data = _parse_json(verified_body)
        log.debug("WhatsApp webhook payload", entries=len(data.get("entry", [])))
        background_tasks.add_task(process_whatsapp_payload, data)
        return JSONResponse({"status": "success"})


# --- Shopify Webhooks ---

@router.post("/shopify")
async def handle_shopify_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    verified_body: bytes = Depends(verify_shopify_signature)
):
    """Single endpoint for every subscribed topic; the topic comes from the header."""
    payload = _parse_json(verified_body)
    topic = (request.headers.get("X-Shopify-Topic") or "").strip().lower()
    if topic not in SUPPORTED_SHOPIFY_TOPICS:
        log.info("Ignoring unsupported Shopify topic.", topic=topic)
        return JSONResponse({"status": "ok", "ignored": True, "topic": topic})

    shop_domain = request.headers.get("X-Shopify-Shop-Domain")
    try:
        store_id = await db_service.get_store_id_for_shop(shop_domain)
    except Exception as e:
        # Answer 200 anyway; a 5xx makes Shopify retry the whole batch.
        log.error("Store lookup failed; using the default store.", shop_domain=shop_domain, error=str(e))
        store_id = settings.default_store_id
    background_tasks.add_task(process_shopify_webhook, store_id, topic, payload)
    log.info("Shopify webhook accepted.", topic=topic, store_id=store_id)
    return JSONResponse({"status": "ok", "topic": topic})
