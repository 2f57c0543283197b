# /engage/services/webhook_service.py

"""
Processing behind the webhook routes. The routes only verify signatures and
parse JSON; everything here runs as a background task after the 200 went out,
so failures are logged and never surface to Shopify or Meta.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from engage.campaigns.attribution import attribute_order
from engage.config.settings import settings
from engage.inbox.delivery import process_delivery_status
from engage.inbox.inbound import process_inbound_message
from engage.journeys.trigger_matcher import extract_primary_customer, match_and_execute_journeys
from engage.models.common import utc_now
from engage.services.db_service import db_service

logger = logging.getLogger(__name__)

SUPPORTED_SHOPIFY_TOPICS = (
    "orders/create",
    "orders/fulfilled",
    "orders/cancelled",
    "checkouts/create",
    "checkouts/update",
    "customers/create",
    "customers/update",
)
# Topics that can change which customers a segment matches.
SEGMENT_AFFECTING_TOPICS = ("orders/create", "customers/create", "customers/update")


def _summary(topic: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": payload.get("id"),
        "email": payload.get("email") or (payload.get("customer") or {}).get("email"),
        "total_price": payload.get("total_price"),
        "topic": topic,
    }


def _log_failure(topic: str, store_id: str, payload: Dict[str, Any], step: str) -> None:
    customer = extract_primary_customer(payload) or {}
    logger.exception(f"Shopify webhook {topic} failed at {step} for store {store_id} (customer {customer.get('id')})")


async def process_shopify_webhook(store_id: str, topic: str, payload: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utc_now()
    result: Dict[str, Any] = {"topic": topic, "store_id": store_id}
    try:
        await db_service.log_webhook(store_id, topic, _summary(topic, payload), now)

        if topic.startswith("customers/"):
            await db_service.upsert_customer(store_id, payload)
        else:
            customer = payload.get("customer")
            if isinstance(customer, dict) and customer.get("id") is not None:
                await db_service.upsert_customer(store_id, customer)
        if topic.startswith("orders/"):
            await db_service.upsert_order(store_id, payload)
        if topic.startswith("checkouts/"):
            await db_service.upsert_checkout(store_id, payload)
    except Exception as e:
        _log_failure(topic, store_id, payload, "sync")
        result["error"] = str(e)
        return result

    event = {"store_id": store_id, "payload": payload, "received_at": now}
    steps = [("journeys", lambda: match_and_execute_journeys(topic, event, now))]
    if topic == "orders/create":
        steps.append(("attributed_log_id", lambda: attribute_order(store_id, payload, now)))
    if topic in SEGMENT_AFFECTING_TOPICS:
        steps.append(("segments_flagged", lambda: db_service.flag_segments_for_update(store_id)))

    # Steps are independent; one failing does not skip the others.
    for key, step in steps:
        try:
            result[key] = await step()
        except Exception as e:
            _log_failure(topic, store_id, payload, key)
            result.setdefault("error", str(e))

    logger.info(f"Shopify webhook {topic} processed for store {store_id}: {result}")
    return result


async def process_whatsapp_payload(data: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, int]:
    """Walk a Cloud API webhook body and dispatch each status and message."""
    now = now or utc_now()
    counts = {"statuses": 0, "messages": 0, "errors": 0}
    store_id = settings.default_store_id

    for entry in data.get("entry", []):
        for change in entry.get("changes", []):
            if change.get("field") != "messages":
                continue
            value = change.get("value", {})

            incoming_phone_id = (value.get("metadata") or {}).get("phone_number_id")
            if incoming_phone_id and settings.whatsapp_phone_id and incoming_phone_id != settings.whatsapp_phone_id:
                logger.info(f"Ignored WhatsApp event for phone id {incoming_phone_id}")
                continue

            for status_data in value.get("statuses", []):
                try:
                    await process_delivery_status(store_id, status_data, now)
                    counts["statuses"] += 1
                except Exception:
                    logger.exception(f"Failed to process WhatsApp status {status_data.get('id')}")
                    counts["errors"] += 1

            profiles = {c.get("wa_id"): (c.get("profile") or {}).get("name") for c in value.get("contacts", [])}
            for message in value.get("messages", []):
                try:
                    await process_inbound_message(store_id, message, profiles.get(message.get("from")), now)
                    counts["messages"] += 1
                except Exception:
                    logger.exception(f"Failed to process WhatsApp message {message.get('id')}")
                    counts["errors"] += 1

    return counts
