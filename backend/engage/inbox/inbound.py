# /engage/inbox/inbound.py

"""
Handles one inbound WhatsApp message: records it in the inbox, applies
opt-out/opt-in keywords, fires the first matching auto-reply rule and hands
replies and button taps to the journey event router.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from engage.config.settings import settings
from engage.journeys.event_router import route_button_click, route_reply
from engage.models.campaign import ENGAGEABLE_LOG_STATUSES
from engage.models.common import ensure_aware, new_id, utc_now
from engage.models.inbox import AutoReplyRule, MatchType, Message, MessageDirection
from engage.services.cache_service import cache_service
from engage.services.db_service import db_service
from engage.services.security_service import PhoneNormalizer
from engage.services.whatsapp_service import whatsapp_service

logger = logging.getLogger(__name__)

OPT_OUT_KEYWORDS = {"STOP", "UNSUBSCRIBE", "OPTOUT", "QUIT"}
OPT_IN_KEYWORDS = {"START", "SUBSCRIBE", "YES"}
OPT_OUT_CONFIRMATION = "You have been unsubscribed and will no longer receive messages from us. Reply START to subscribe again."
OPT_IN_CONFIRMATION = "You are subscribed again. Reply STOP at any time to unsubscribe."
PREVIEW_LENGTH = 100


def extract_message_content(message: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    """
    Text to show in the inbox plus the button payload when the message is a
    button tap (interactive reply or template quick reply).
    """
    message_type = message.get("type", "text")
    if message_type == "text":
        return (message.get("text") or {}).get("body", ""), None
    if message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title", ""), reply.get("id")
    if message_type == "button":
        button = message.get("button") or {}
        return button.get("text", ""), button.get("payload") or button.get("text")
    return f"[{message_type}]", None


def _parse_hhmm(value: str) -> Tuple[int, int]:
    hours, minutes = value.split(":", 1)
    return int(hours), int(minutes)


def is_within_schedule(rule: AutoReplyRule, now: datetime) -> bool:
    if rule.schedule is None:
        return True
    local = ensure_aware(now).astimezone(ZoneInfo(settings.scheduler_timezone))
    if local.weekday() not in rule.schedule.days:
        return False
    try:
        start, end = _parse_hhmm(rule.schedule.start), _parse_hhmm(rule.schedule.end)
    except ValueError:
        logger.warning(f"Auto-reply rule {rule.id} has an invalid schedule")
        return False
    current = (local.hour, local.minute)
    if start <= end:
        return start <= current <= end
    # Overnight window, e.g. 22:00 to 06:00.
    return current >= start or current <= end


def rule_matches(rule: AutoReplyRule, text: str) -> bool:
    lowered = text.strip().lower()
    for keyword in rule.keywords:
        keyword = keyword.strip()
        if not keyword:
            continue
        if rule.match_type == MatchType.EXACT and lowered == keyword.lower():
            return True
        if rule.match_type == MatchType.CONTAINS and keyword.lower() in lowered:
            return True
        if rule.match_type == MatchType.REGEX:
            try:
                if re.search(keyword, text, re.IGNORECASE):
                    return True
            except re.error:
                logger.warning(f"Auto-reply rule {rule.id} has an invalid pattern: {keyword}")
    return False


def find_auto_reply(rules: List[Dict[str, Any]], text: str, now: datetime) -> Optional[AutoReplyRule]:
    """First active rule, by ascending priority, whose keywords and schedule match."""
    parsed = sorted((AutoReplyRule.model_validate(r) for r in rules), key=lambda r: r.priority)
    for rule in parsed:
        if rule.active and rule_matches(rule, text) and is_within_schedule(rule, now):
            return rule
    return None


async def _reply(store_id: str, conversation_id: str, phone: str, text: str, now: datetime, source: str) -> Optional[str]:
    wamid = await whatsapp_service.send_text_message(
        phone, text, metadata={"store_id": store_id, "conversation_id": conversation_id, "source": source}
    )
    if wamid:
        await db_service.record_outbound_on_conversation(conversation_id, text[:PREVIEW_LENGTH], now)
    return wamid


async def process_inbound_message(
    store_id: str,
    message: Dict[str, Any],
    profile_name: Optional[str] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    now = now or utc_now()
    phone = PhoneNormalizer.digits_of(message.get("from"))
    if not phone:
        logger.warning(f"Inbound message without a sender: {message.get('id')}")
        return {"status": "ignored"}
    wamid = message.get("id")
    if wamid and await cache_service.is_duplicate_message(wamid, phone):
        logger.info(f"Duplicate message {wamid} from {phone} received, ignoring.")
        return {"status": "duplicate"}
    text, button_payload = extract_message_content(message)

    contact = await db_service.upsert_contact_on_inbound(store_id, phone, profile_name, now, new_id("contact"))
    conversation = await db_service.upsert_conversation_on_inbound(
        store_id, contact["id"], phone, text[:PREVIEW_LENGTH], now, new_id("conv")
    )
    inbound = Message(
        store_id=store_id,
        conversation_id=conversation["id"],
        wamid=wamid,
        phone=phone,
        direction=MessageDirection.INBOUND,
        message_type=message.get("type", "text"),
        content=text,
        timestamp=now,
        metadata={"context_id": (message.get("context") or {}).get("id"), "button_payload": button_payload},
    )
    await db_service.log_message(inbound.model_dump())

    keyword = text.strip().upper()
    if keyword in OPT_OUT_KEYWORDS:
        await db_service.set_contact_opt_out(store_id, phone, True, now)
        await _reply(store_id, conversation["id"], phone, OPT_OUT_CONFIRMATION, now, "opt_out")
        logger.info(f"Contact {phone} opted out in store {store_id}")
        return {"status": "opted_out", "conversation_id": conversation["id"]}
    if keyword in OPT_IN_KEYWORDS and contact.get("opted_out"):
        await db_service.set_contact_opt_out(store_id, phone, False, now)
        await _reply(store_id, conversation["id"], phone, OPT_IN_CONFIRMATION, now, "opt_in")
        logger.info(f"Contact {phone} opted back in to store {store_id}")
        return {"status": "opted_in", "conversation_id": conversation["id"]}

    auto_reply_id = None
    if not contact.get("opted_out") and text:
        rule = find_auto_reply(await db_service.get_active_auto_reply_rules(store_id), text, now)
        if rule:
            # The customer just wrote, so the service window is open.
            await _reply(store_id, conversation["id"], phone, rule.reply, now, f"auto_reply:{rule.id}")
            auto_reply_id = rule.id

    context_id = (message.get("context") or {}).get("id")
    if button_payload and context_id:
        await route_button_click(store_id, context_id, button_payload, text, now)
    elif text:
        await route_reply(store_id, phone, text, now)
        since = now - timedelta(hours=settings.attribution_window_hours)
        await db_service.mark_logs_replied(store_id, PhoneNormalizer.last_ten_digits(phone), ENGAGEABLE_LOG_STATUSES, since, now)

    return {"status": "received", "conversation_id": conversation["id"], "auto_reply": auto_reply_id}
