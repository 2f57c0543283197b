# /engage/journeys/trigger_matcher.py

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, TypedDict

from engage.journeys.condition_evaluator import compare, get_path, to_number
from engage.journeys.executor import start_journey_execution
from engage.models.common import ensure_aware, utc_now
from engage.models.journey import EnrollmentStatus, Journey, JourneyNode
from engage.services.db_service import db_service
from engage.services.security_service import PhoneNormalizer

logger = logging.getLogger(__name__)

# Builder trigger types that correspond to a Shopify webhook topic.
TRIGGER_TOPIC_ALIASES = {
    "order_placed": "orders/create",
    "order_created": "orders/create",
    "first_purchase": "orders/create",
    "repeat_purchase": "orders/create",
    "checkout_started": "checkouts/create",
    "abandoned_cart": "checkouts/create",
    "customer_created": "customers/create",
    "order_fulfilled": "orders/fulfilled",
}
ORDER_TOTAL_FIELDS = ("total_price", "subtotal_price", "total", "totalPrice", "totalAmount")
OPEN_STATUSES = (EnrollmentStatus.ACTIVE.value, EnrollmentStatus.WAITING.value)


class MatchResult(TypedDict):
    matched: int
    enrolled: int
    skipped: int
    errors: int


def extract_trigger_config(node: JourneyNode) -> Dict[str, Any]:
    """Trigger settings may live in `data`, `data.meta` or `trigger`; later sources win."""
    config: Dict[str, Any] = dict(node.data)
    if isinstance(node.data.get("meta"), dict):
        config.update(node.data["meta"])
    if node.trigger:
        config.update(node.trigger)
    return config


def normalize_event(value: Any) -> str:
    event = str(value or "").strip().lower()
    return TRIGGER_TOPIC_ALIASES.get(event, event)


def order_total(payload: Dict[str, Any]) -> Optional[float]:
    for field in ORDER_TOTAL_FIELDS:
        number = to_number(payload.get(field))
        if number is not None:
            return number
    return None


def _split_tags(tags: Any) -> list:
    if isinstance(tags, list):
        return [str(t).strip().lower() for t in tags if str(t).strip()]
    return [t.strip().lower() for t in str(tags or "").split(",") if t.strip()]


def trigger_matches(config: Dict[str, Any], event_type: str, payload: Dict[str, Any]) -> bool:
    configured = config.get("webhookEvent") or config.get("eventType") or config.get("triggerType") or config.get("type")
    if not configured or normalize_event(configured) != event_type.strip().lower():
        return False

    customer = payload.get("customer") or {}
    trigger_type = str(config.get("triggerType") or config.get("type") or "").lower()
    orders_count = to_number(customer.get("orders_count"))
    if trigger_type == "first_purchase" and orders_count is not None and orders_count > 1:
        return False
    if trigger_type == "repeat_purchase" and (orders_count is None or orders_count <= 1):
        return False

    operator = str(config.get("orderValueOperator") or "").lower()
    target = to_number(config.get("orderValueAmount"))
    if target is None:
        target = to_number(config.get("orderValue"))
    if operator and target is not None:
        total = order_total(payload)
        if total is None:
            return False
        if operator == "gt" and not total > target:
            return False
        if operator == "lt" and not total < target:
            return False
        if operator in ("eq", "equals") and total != target:
            return False

    categories = [str(c).strip().lower() for c in config.get("productCategories") or [] if str(c).strip()]
    if categories:
        items = payload.get("line_items") or payload.get("items") or []
        if not any(str(item.get("product_type") or "").strip().lower() in categories for item in items):
            return False

    required_tags = _split_tags(config.get("customerTags"))
    if required_tags:
        customer_tags = _split_tags(customer.get("tags"))
        if not all(tag in customer_tags for tag in required_tags):
            return False

    location_field = config.get("locationField")
    location_value = config.get("locationValue")
    if location_field and location_value:
        # Each field falls back to the shipping address when the customer's default address lacks it.
        default_address = customer.get("default_address") or {}
        shipping_address = payload.get("shipping_address") or {}
        actual = default_address.get(location_field) or shipping_address.get(location_field)
        if str(actual or "").strip().lower() != str(location_value).strip().lower():
            return False

    conditions = config.get("conditions") or []
    if conditions:
        logic = str(config.get("conditionLogic") or config.get("conditionJoin") or "all").lower()
        results = [
            compare(get_path(payload, c.get("field", "")), c.get("operator", ""), c.get("value"))
            for c in conditions
        ]
        if logic == "any" and not any(results):
            return False
        if logic != "any" and not all(results):
            return False

    return True


def extract_primary_customer(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """The customer a webhook payload is about, or None when it cannot be identified."""
    customer = payload.get("customer")
    if isinstance(customer, dict) and customer:
        base = customer
        customer_id = customer.get("id") or customer.get("customer_id") or payload.get("customer_id")
    else:
        base = payload
        customer_id = payload.get("customer_id")
        if customer_id is None and "line_items" not in payload:
            customer_id = payload.get("id")
    if customer_id is None:
        return None

    phone = (
        base.get("phone")
        or payload.get("phone")
        or (payload.get("shipping_address") or {}).get("phone")
        or (payload.get("billing_address") or {}).get("phone")
        or (base.get("default_address") or {}).get("phone")
    )
    return {
        **base,
        "id": str(customer_id),
        "email": base.get("email") or payload.get("email") or payload.get("contact_email"),
        "phone": phone,
    }


def is_test_recipient(journey: Journey, phone: Optional[str]) -> bool:
    wanted = PhoneNormalizer.last_ten_digits(phone)
    return bool(wanted) and any(PhoneNormalizer.last_ten_digits(p) == wanted for p in journey.test_phones)


async def can_enter_journey(journey: Journey, customer_id: str, now: datetime) -> bool:
    enrollments = await db_service.get_customer_enrollments(journey.id, customer_id)
    if not enrollments:
        return True
    if any(e.get("status") in OPEN_STATUSES for e in enrollments):
        return False
    if not journey.settings.allow_reentry:
        return False

    cooldown_days = journey.settings.reentry_cooldown_days
    if cooldown_days:
        last_entered = ensure_aware(enrollments[0].get("entered_at"))
        return last_entered is None or last_entered + timedelta(days=cooldown_days) <= now
    return True


async def match_and_execute_journeys(event_type: str, event: Dict[str, Any], now: Optional[datetime] = None) -> MatchResult:
    """
    Enroll the event's customer into every active journey of the store whose
    trigger matches. One broken journey never stops the others.
    """
    now = now or utc_now()
    store_id = event["store_id"]
    payload = event.get("payload") or {}
    result: MatchResult = {"matched": 0, "enrolled": 0, "skipped": 0, "errors": 0}

    for document in await db_service.get_active_journeys(store_id):
        try:
            journey = Journey.model_validate(document)
            if not any(trigger_matches(extract_trigger_config(n), event_type, payload) for n in journey.trigger_nodes()):
                continue
            result["matched"] += 1

            customer = extract_primary_customer(payload)
            if not customer:
                logger.info(f"Journey {journey.id} matched {event_type} but the payload has no customer")
                result["skipped"] += 1
                continue
            if journey.test_mode and not is_test_recipient(journey, customer.get("phone")):
                result["skipped"] += 1
                continue
            if not await can_enter_journey(journey, customer["id"], now):
                result["skipped"] += 1
                continue

            trigger_event = {"type": event_type, "payload": payload, "received_at": event.get("received_at") or now}
            await start_journey_execution(journey, customer, trigger_event, now)
            result["enrolled"] += 1
        except Exception:
            logger.exception(f"Failed to process journey {document.get('id')} for {event_type}")
            result["errors"] += 1

    logger.info(f"Journey matching for {event_type} in store {store_id}: {result}")
    return result
