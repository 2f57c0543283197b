# /engage/jobs/campaign_worker.py

"""
Campaign queue worker. Each step claims one due queue item, sends the
campaign to its audience and records one log per customer. A failing run is
put back on the queue with a growing delay until the retry limit is reached.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from engage.campaigns.personalization import customer_values, personalize
from engage.campaigns.smart_window import WINDOW, send_with_smart_window
from engage.config.settings import settings
from engage.models.campaign import (
    Campaign, CampaignChannel, CampaignLog, CampaignLogStatus, CampaignQueueItem, CampaignStatus, QueueStatus,
)
from engage.models.common import utc_now
from engage.segments.evaluator import resolve_segment_customers
from engage.services.db_service import db_service
from engage.services.security_service import PhoneNormalizer
from engage.utils.metrics import campaign_messages_counter

logger = logging.getLogger(__name__)

# Keep bulk sends under the Cloud API throughput limits.
SEND_PAUSE_SECONDS = 0.05


async def _deliver(campaign: Campaign, customer: Dict[str, Any], now: datetime) -> CampaignLog:
    values = customer_values(customer)
    log = CampaignLog(
        store_id=campaign.store_id,
        campaign_id=campaign.id,
        customer_id=str(customer.get("id")) if customer.get("id") is not None else None,
        email=customer.get("email"),
        phone=customer.get("phone"),
        status=CampaignLogStatus.SUCCESS,
        created_at=now,
    )

    if campaign.channel == CampaignChannel.EMAIL:
        if not customer.get("email"):
            log.status = CampaignLogStatus.SKIPPED
            log.error = "Customer has no email address"
        return log

    if campaign.channel != CampaignChannel.WHATSAPP:
        return log

    recipient = PhoneNormalizer.to_whatsapp_recipient(customer.get("phone"))
    if not recipient:
        log.status = CampaignLogStatus.FAILED
        log.error = f"Invalid phone number: {customer.get('phone')}"
        return log

    contact = await db_service.find_contact(campaign.store_id, recipient, log.customer_id)
    result = await send_with_smart_window(
        recipient,
        personalize(campaign.message, values),
        contact,
        now,
        template_name=campaign.template_name,
        template_language=campaign.template_language,
        body_params=[values["name"]] if campaign.template_name else None,
        metadata={"store_id": campaign.store_id, "campaign_id": campaign.id},
    )
    log.phone = recipient
    if not result.get("success"):
        log.status = CampaignLogStatus.FAILED
        log.error = result.get("error")
        return log

    log.message_id = result.get("message_id")
    log.used_free_form = bool(result.get("used_free_form"))
    if not log.used_free_form:
        log.window_expires_at = now + WINDOW
    await asyncio.sleep(SEND_PAUSE_SECONDS)
    return log


def _customer_key(customer_id: Optional[str], phone: Optional[str], email: Optional[str]) -> Optional[str]:
    if customer_id:
        return f"id:{customer_id}"
    digits = PhoneNormalizer.digits_of(phone)
    if digits:
        return f"phone:{digits}"
    return f"email:{email.lower()}" if email else None


async def _send_campaign(campaign: Campaign, now: datetime) -> Dict[str, int]:
    customers = await resolve_segment_customers(campaign.store_id, campaign.segment_id, now)
    logger.info(f"Campaign {campaign.id} sending to {len(customers)} customers over {campaign.channel.value}")

    # Logs from an earlier, interrupted run of this campaign; those customers are not sent to again.
    statuses = {}
    for existing in await db_service.get_campaign_step_logs(campaign.id, 0):
        key = _customer_key(existing.get("customer_id"), existing.get("phone"), existing.get("email"))
        if key:
            statuses[key] = existing.get("status")
    if statuses:
        logger.info(f"Campaign {campaign.id} resuming; {len(statuses)} customers already logged")

    for customer in customers:
        customer_id = str(customer.get("id")) if customer.get("id") is not None else None
        key = _customer_key(customer_id, customer.get("phone"), customer.get("email"))
        if key and key in statuses:
            continue
        log = await _deliver(campaign, customer, now)
        await db_service.create_campaign_log(log.model_dump())
        campaign_messages_counter.labels(channel=campaign.channel.value, status=log.status.value.lower()).inc()
        statuses[key or log.id] = log.status.value

    sent = sum(1 for status in statuses.values() if status == CampaignLogStatus.SUCCESS.value)
    failed = sum(1 for status in statuses.values() if status == CampaignLogStatus.FAILED.value)
    return {"sent": sent, "failed": failed, "skipped": len(statuses) - sent - failed}


async def run_campaign_worker_step(now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Process one queued campaign. Returns None when nothing is due."""
    now = now or utc_now()
    document = await db_service.claim_next_queue_item(now)
    if not document:
        return None
    item = CampaignQueueItem.model_validate(document)

    try:
        campaign_doc = await db_service.get_campaign(item.campaign_id)
        if not campaign_doc:
            raise LookupError(f"Campaign {item.campaign_id} not found")
        campaign = Campaign.model_validate(campaign_doc)
        await db_service.update_campaign(campaign.id, {"status": CampaignStatus.RUNNING.value})

        counts = await _send_campaign(campaign, now)

        await db_service.update_campaign(campaign.id, {
            "status": CampaignStatus.COMPLETED.value,
            "total_sent": counts["sent"],
            "total_failed": counts["failed"],
            "sent_at": now,
        })
        await db_service.delete_queue_item(item.id)
        await db_service.increment_usage_metric(campaign.store_id, now.strftime("%Y-%m"), {"messages_sent": counts["sent"]}, now)
        logger.info(f"Campaign {campaign.id} completed: {counts}")
        return {"campaign_id": campaign.id, "status": CampaignStatus.COMPLETED.value, **counts}

    except Exception as e:
        retry_count = item.retry_count + 1
        logger.error(f"Campaign queue item {item.id} failed (attempt {retry_count}): {e}", exc_info=True)
        if retry_count >= settings.campaign_retry_limit:
            await db_service.update_queue_item(item.id, {
                "status": QueueStatus.FAILED.value, "retry_count": retry_count, "error": str(e),
            })
            await db_service.update_campaign(item.campaign_id, {"status": CampaignStatus.FAILED.value})
            return {"campaign_id": item.campaign_id, "status": CampaignStatus.FAILED.value, "error": str(e)}

        await db_service.update_queue_item(item.id, {
            "status": QueueStatus.PENDING.value,
            "retry_count": retry_count,
            "error": str(e),
            "scheduled_at": now + timedelta(milliseconds=settings.campaign_batch_delay_ms * retry_count),
        })
        return {"campaign_id": item.campaign_id, "status": "RETRYING", "retry_count": retry_count, "error": str(e)}
