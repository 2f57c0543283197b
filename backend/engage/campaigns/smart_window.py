# /engage/campaigns/smart_window.py

"""
WhatsApp only bills free-form messages when they fall outside the 24 hour
customer service window. Sends routed through here use free-form text while
the window is open and fall back to an approved template otherwise.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TypedDict

from engage.models.common import ensure_aware, parse_datetime
from engage.services.db_service import db_service
from engage.services.whatsapp_service import whatsapp_service

logger = logging.getLogger(__name__)

WINDOW = timedelta(hours=24)
OUTSIDE_WINDOW_ERROR = "Outside 24hr window and no template configured"


class SmartSendResult(TypedDict, total=False):
    success: bool
    used_free_form: bool
    message_id: Optional[str]
    error: Optional[str]


def is_in_free_window(
    contact: Optional[Dict[str, Any]],
    now: datetime,
    window_expires_at: Optional[datetime] = None
) -> bool:
    if window_expires_at is not None:
        return ensure_aware(window_expires_at) > now
    last_message_at = parse_datetime((contact or {}).get("last_message_at"))
    return last_message_at is not None and now - last_message_at < WINDOW


async def send_with_smart_window(
    phone: str,
    message: str,
    contact: Optional[Dict[str, Any]],
    now: datetime,
    template_name: Optional[str] = None,
    template_language: str = "en",
    body_params: Optional[List[str]] = None,
    window_expires_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> SmartSendResult:
    """Never raises; failures come back as `success=False` with an error string."""
    try:
        if is_in_free_window(contact, now, window_expires_at):
            message_id = await whatsapp_service.send_text_message(phone, message, metadata=metadata)
            if not message_id:
                return {"success": False, "used_free_form": True, "error": "WhatsApp API rejected the message"}
            return {"success": True, "used_free_form": True, "message_id": message_id}

        if template_name:
            message_id = await whatsapp_service.send_template_message(
                phone, template_name, language=template_language, body_params=body_params, metadata=metadata
            )
            if not message_id:
                return {"success": False, "used_free_form": False, "error": "WhatsApp API rejected the template"}
            return {"success": True, "used_free_form": False, "message_id": message_id}

        return {"success": False, "used_free_form": False, "error": OUTSIDE_WINDOW_ERROR}
    except Exception as e:
        logger.error(f"Smart window send to {phone} failed: {e}")
        return {"success": False, "used_free_form": False, "error": str(e)}


async def count_in_window_customers(store_id: str, now: datetime) -> Dict[str, int]:
    total = await db_service.count_contacts(store_id)
    in_window = await db_service.count_contacts_messaged_since(store_id, now - WINDOW)
    return {"total": total, "in_window": in_window, "out_of_window": max(total - in_window, 0)}
