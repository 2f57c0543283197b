# /engage/jobs/follow_up_worker.py

"""
Campaign follow-up worker.

Each follow-up step fires `delay_minutes` after the previous step's message
to the customers whose engagement matches the step condition (not read, read
but not clicked, ...). Every eligible log is claimed by flipping
`follow_up_sent` before anything is sent, so two overlapping runs never
message the same customer twice.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TypedDict

from engage.campaigns.personalization import contact_values, personalize
from engage.campaigns.smart_window import WINDOW, send_with_smart_window
from engage.config.settings import settings
from engage.models.campaign import CampaignFollowUp, CampaignLog, CampaignLogStatus, FollowUpCondition
from engage.models.common import utc_now
from engage.services.db_service import db_service
from engage.services.whatsapp_service import whatsapp_service
from engage.utils.metrics import campaign_messages_counter

logger = logging.getLogger(__name__)

SENT_STATUSES = [CampaignLogStatus.SUCCESS.value, CampaignLogStatus.DELIVERED.value]


class StepDetail(TypedDict):
    campaign_id: str
    step_index: int
    sent: int
    free_form: int
    template: int
    skipped: int
    failed: int


class FollowUpResult(TypedDict):
    processed: int
    sent: int
    skipped: int
    errors: int
    details: List[StepDetail]


def build_condition_filter(condition: FollowUpCondition) -> Dict[str, Any]:
    """Mongo filter selecting previous-step logs that satisfy a follow-up condition."""
    if condition == FollowUpCondition.NOT_READ:
        return {"status": {"$in": SENT_STATUSES}, "read_at": None}
    if condition == FollowUpCondition.READ:
        return {"read_at": {"$ne": None}}
    if condition == FollowUpCondition.NOT_CLICKED:
        return {"read_at": {"$ne": None}, "clicked_at": None}
    if condition == FollowUpCondition.CLICKED:
        return {"clicked_at": {"$ne": None}}
    if condition == FollowUpCondition.NOT_CONVERTED:
        return {"clicked_at": {"$ne": None}, "converted_at": None}
    if condition == FollowUpCondition.CONVERTED:
        return {"converted_at": {"$ne": None}}
    if condition == FollowUpCondition.NOT_REPLIED:
        return {"status": {"$in": [
            CampaignLogStatus.SUCCESS.value,
            CampaignLogStatus.DELIVERED.value,
            CampaignLogStatus.READ.value,
            CampaignLogStatus.CLICKED.value,
        ]}}
    if condition == FollowUpCondition.REPLIED:
        return {"status": CampaignLogStatus.REPLIED.value}
    return {}


def _empty_result() -> FollowUpResult:
    return {"processed": 0, "sent": 0, "skipped": 0, "errors": 0, "details": []}


async def _send_follow_up(step: CampaignFollowUp, log: CampaignLog, detail: StepDetail, now: datetime) -> Optional[bool]:
    """Returns True when sent, False when the send failed, None when skipped."""
    contact = await db_service.find_contact(log.store_id, log.phone, log.customer_id)
    phone = log.phone or (contact or {}).get("phone")
    if not phone:
        detail["skipped"] += 1
        return None

    message = personalize(step.message, contact_values(contact))
    result = await send_with_smart_window(
        phone,
        message,
        contact,
        now,
        template_name=step.template_name,
        template_language=step.template_language,
        window_expires_at=log.window_expires_at,
        metadata={"store_id": log.store_id, "campaign_id": log.campaign_id, "follow_up_step_id": step.id},
    )

    follow_up_log = CampaignLog(
        store_id=log.store_id,
        campaign_id=log.campaign_id,
        customer_id=log.customer_id,
        email=log.email,
        phone=phone,
        status=CampaignLogStatus.SUCCESS if result.get("success") else CampaignLogStatus.FAILED,
        step_index=step.step_index,
        step_id=step.id,
        created_at=now,
    )

    if not result.get("success"):
        follow_up_log.error = result.get("error")
        await db_service.create_campaign_log(follow_up_log.model_dump())
        detail["failed"] += 1
        campaign_messages_counter.labels(channel="WHATSAPP", status="failed").inc()
        return False

    used_free_form = bool(result.get("used_free_form"))
    follow_up_log.message_id = result.get("message_id")
    follow_up_log.used_free_form = used_free_form
    if used_free_form:
        last_message_at = (contact or {}).get("last_message_at")
        follow_up_log.window_expires_at = log.window_expires_at or (last_message_at + WINDOW if last_message_at else None)
    else:
        follow_up_log.window_expires_at = now + WINDOW
    await db_service.create_campaign_log(follow_up_log.model_dump())
    await db_service.increment_follow_up(step.id, {"total_sent": 1, "total_free_form": 1 if used_free_form else 0})

    detail["sent"] += 1
    detail["free_form" if used_free_form else "template"] += 1
    campaign_messages_counter.labels(channel="WHATSAPP", status="sent").inc()
    return True


async def run_follow_up_worker_step(now: Optional[datetime] = None) -> FollowUpResult:
    now = now or utc_now()
    result = _empty_result()
    if not whatsapp_service.is_configured:
        logger.debug("WhatsApp is not configured; skipping follow-up worker")
        return result

    for document in await db_service.get_active_follow_up_steps():
        step = CampaignFollowUp.model_validate(document)
        detail: StepDetail = {
            "campaign_id": step.campaign_id, "step_index": step.step_index,
            "sent": 0, "free_form": 0, "template": 0, "skipped": 0, "failed": 0,
        }
        candidates = await db_service.find_follow_up_candidates(
            step.campaign_id,
            step.step_index - 1,
            now - timedelta(minutes=step.delay_minutes),
            build_condition_filter(step.condition),
            settings.follow_up_batch_limit,
        )

        for log_document in candidates:
            log = CampaignLog.model_validate(log_document)
            if not await db_service.mark_follow_up_sent(log.id, now):
                # Another run claimed this log.
                continue
            result["processed"] += 1
            try:
                outcome = await _send_follow_up(step, log, detail, now)
            except Exception as e:
                logger.error(f"Follow-up step {step.id} failed for log {log.id}: {e}")
                detail["failed"] += 1
                result["errors"] += 1
                continue
            if outcome is True:
                result["sent"] += 1
            elif outcome is None:
                result["skipped"] += 1
            else:
                result["errors"] += 1

        if candidates:
            result["details"].append(detail)
            logger.info(f"Follow-up step {step.step_index} of campaign {step.campaign_id}: {detail}")

    return result
