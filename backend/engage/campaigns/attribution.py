# /engage/campaigns/attribution.py

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from engage.config.settings import settings
from engage.journeys.condition_evaluator import to_number
from engage.journeys.trigger_matcher import order_total
from engage.models.campaign import ENGAGEABLE_LOG_STATUSES, CampaignLogStatus
from engage.services.db_service import db_service
from engage.services.security_service import PhoneNormalizer

logger = logging.getLogger(__name__)


async def attribute_order(store_id: str, order: Dict[str, Any], now: datetime) -> Optional[str]:
    """
    Last-touch attribution: credit the most recent campaign message that
    reached the buyer within the attribution window. Returns the log id.
    """
    customer = order.get("customer") or {}
    email = customer.get("email") or order.get("email")
    phone = (
        customer.get("phone")
        or order.get("phone")
        or (order.get("shipping_address") or {}).get("phone")
        or (order.get("billing_address") or {}).get("phone")
    )
    customer_id = customer.get("id")

    log = await db_service.find_attribution_candidate(
        store_id,
        ENGAGEABLE_LOG_STATUSES,
        now - timedelta(hours=settings.attribution_window_hours),
        email,
        PhoneNormalizer.last_ten_digits(phone) or None,
        str(customer_id) if customer_id is not None else None,
    )
    if not log:
        return None

    amount = order_total(order) or to_number(order.get("current_total_price")) or 0.0
    await db_service.update_campaign_log(log["id"], {
        "status": CampaignLogStatus.CONVERTED.value,
        "converted_at": now,
        "order_id": str(order.get("id")),
        "order_amount": amount,
    })
    await db_service.increment_campaign(log["campaign_id"], {"total_converted": 1, "total_revenue": amount})
    logger.info(f"Order {order.get('id')} attributed to campaign {log['campaign_id']} (log {log['id']}, {amount})")
    return log["id"]
