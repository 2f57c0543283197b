# /engage/inbox/delivery.py

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from engage.campaigns.smart_window import WINDOW
from engage.journeys.event_router import route_delivery_status
from engage.models.campaign import CampaignLogStatus
from engage.models.common import utc_now
from engage.services.db_service import db_service
from engage.utils.metrics import message_counter

logger = logging.getLogger(__name__)

TRACKED_STATUSES = ("sent", "delivered", "read", "failed")
# Statuses a late receipt must not overwrite.
PAST_READ = [
    CampaignLogStatus.CLICKED.value, CampaignLogStatus.REPLIED.value, CampaignLogStatus.CONVERTED.value,
]
PAST_DELIVERED = [CampaignLogStatus.READ.value, *PAST_READ]


def _failure_reason(status: Dict[str, Any]) -> str:
    errors = status.get("errors") or [{}]
    return errors[0].get("title") or errors[0].get("message") or "Delivery failed"


async def _update_campaign_log(wamid: str, status: str, status_obj: Dict[str, Any], now: datetime) -> None:
    keep = None
    if status == "delivered":
        fields: Dict[str, Any] = {"status": CampaignLogStatus.DELIVERED.value, "delivered_at": now}
        counter = "total_delivered"
        keep = PAST_DELIVERED
    elif status == "read":
        fields = {"status": CampaignLogStatus.READ.value, "read_at": now, "window_expires_at": now + WINDOW}
        counter = "total_opened"
        keep = PAST_READ
    elif status == "failed":
        fields = {"status": CampaignLogStatus.FAILED.value, "error": _failure_reason(status_obj)}
        counter = "total_failed"
    else:
        return

    # Receipts can arrive out of order; the update leaves a later status in place.
    before = await db_service.update_campaign_log_by_message_id(wamid, fields, keep)
    if not before:
        return
    if status == "failed":
        first_time = before.get("status") != CampaignLogStatus.FAILED.value
    else:
        first_time = before.get(f"{status}_at") is None
    if first_time:
        await db_service.increment_campaign(before["campaign_id"], {counter: 1})


async def process_delivery_status(store_id: str, status_obj: Dict[str, Any], now: Optional[datetime] = None) -> Optional[str]:
    """Apply one entry of a webhook's `statuses[]` array. Returns the journey routing outcome."""
    now = now or utc_now()
    wamid = status_obj.get("id")
    status = str(status_obj.get("status") or "").lower()
    if not wamid or status not in TRACKED_STATUSES:
        return None

    await db_service.update_message_status(wamid, status, now)
    message_counter.labels(status=status, message_type="status_update").inc()
    await _update_campaign_log(wamid, status, status_obj, now)

    if status == "sent":
        return None
    outcome = await route_delivery_status(store_id, wamid, status, now)
    if outcome:
        logger.info(f"Delivery status {status} for {wamid} routed to journey: {outcome}")
    return outcome

