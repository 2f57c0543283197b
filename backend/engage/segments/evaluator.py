# /engage/segments/evaluator.py

"""
Evaluates saved segments against the mirrored Shopify customers.

Groups are ANDed together; each group joins its own conditions with its
`group_operator`. Text comparisons are case-insensitive.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from engage.models.common import parse_datetime, utc_now
from engage.models.segment import Segment, SegmentCondition, SegmentGroup
from engage.services.db_service import db_service

logger = logging.getLogger(__name__)

UNKNOWN_DAYS_SINCE_ORDER = 999


# ==================== Field getters ====================

def _address(customer: Dict[str, Any]) -> Dict[str, Any]:
    addresses = customer.get("addresses") or []
    return customer.get("default_address") or (addresses[0] if addresses else {}) or {}


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _last_order_date(customer: Dict[str, Any]) -> Optional[datetime]:
    last_order = customer.get("last_order") or {}
    return parse_datetime(customer.get("last_order_date") or last_order.get("created_at"))


def _average_order_value(customer: Dict[str, Any]) -> float:
    orders = _to_float(customer.get("orders_count")) or 0.0
    spent = _to_float(customer.get("total_spent")) or 0.0
    return round(spent / orders, 2) if orders else 0.0


def _accepts_marketing(customer: Dict[str, Any]) -> bool:
    if "accepts_marketing" in customer:
        return bool(customer.get("accepts_marketing"))
    consent = customer.get("email_marketing_consent") or {}
    return consent.get("state") == "subscribed"


def _days_since_last_order(customer: Dict[str, Any], now: datetime) -> int:
    last_order = _last_order_date(customer)
    if last_order is None:
        return UNKNOWN_DAYS_SINCE_ORDER
    return max((now - last_order).days, 0)


def _full_name(customer: Dict[str, Any]) -> str:
    return " ".join(p for p in (customer.get("first_name"), customer.get("last_name")) if p)


FIELD_GETTERS: Dict[str, Callable[[Dict[str, Any], datetime], Any]] = {
    "customer_name": lambda c, now: _full_name(c),
    "first_name": lambda c, now: c.get("first_name"),
    "last_name": lambda c, now: c.get("last_name"),
    "email": lambda c, now: c.get("email"),
    "phone": lambda c, now: c.get("phone") or _address(c).get("phone"),
    "tags": lambda c, now: c.get("tags") or "",
    "location_city": lambda c, now: _address(c).get("city"),
    "location_state": lambda c, now: _address(c).get("province"),
    "location_country": lambda c, now: _address(c).get("country"),
    "location_zip": lambda c, now: _address(c).get("zip"),
    "customer_since": lambda c, now: parse_datetime(c.get("created_at")),
    "accepts_marketing": lambda c, now: _accepts_marketing(c),
    "total_orders": lambda c, now: _to_float(c.get("orders_count")) or 0.0,
    "total_spent": lambda c, now: _to_float(c.get("total_spent")) or 0.0,
    "average_order_value": lambda c, now: _average_order_value(c),
    "last_order_date": lambda c, now: _last_order_date(c),
    "days_since_last_order": _days_since_last_order,
    "never_ordered": lambda c, now: (_to_float(c.get("orders_count")) or 0.0) == 0,
}


def get_customer_field(customer: Dict[str, Any], field: str, now: datetime) -> Any:
    getter = FIELD_GETTERS.get(field)
    if getter is None:
        return customer.get(field)
    return getter(customer, now)


# ==================== Operators ====================

def _text(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    return "" if value is None else str(value).strip().lower()


def _bounds(value: Any) -> Optional[Sequence[Any]]:
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return value
    if isinstance(value, str) and "," in value:
        low, high = value.split(",", 1)
        return low.strip(), high.strip()
    return None


def _as_date(value: Any) -> Optional[datetime]:
    return parse_datetime(value) if not isinstance(value, datetime) else value


def apply_operator(actual: Any, operator: str, expected: Any, now: datetime) -> bool:
    op = (operator or "").lower()

    if op == "is_empty":
        return _text(actual) == ""
    if op == "is_not_empty":
        return _text(actual) != ""

    if op in ("greater_than", "less_than", "between"):
        number = _to_float(actual.timestamp() if isinstance(actual, datetime) else actual)
        if number is None:
            return False
        if op == "between":
            bounds = _bounds(expected)
            if bounds is None:
                return False
            low, high = _to_float(bounds[0]), _to_float(bounds[1])
            return low is not None and high is not None and low <= number <= high
        target = _to_float(expected)
        if target is None:
            return False
        return number > target if op == "greater_than" else number < target

    if op in ("in_last_days", "before_date", "after_date"):
        when = _as_date(actual)
        if when is None:
            return False
        if op == "in_last_days":
            days = _to_float(expected)
            return days is not None and when >= now - timedelta(days=days)
        boundary = parse_datetime(expected)
        if boundary is None:
            return False
        return when < boundary if op == "before_date" else when > boundary

    left, right = _text(actual), _text(expected)
    if op == "equals":
        return left == right
    if op == "not_equals":
        return left != right
    if op == "contains":
        return right in left
    if op == "not_contains":
        return right not in left
    if op == "starts_with":
        return left.startswith(right)
    if op == "ends_with":
        return left.endswith(right)

    logger.warning(f"Unknown segment operator '{operator}'")
    return False


# ==================== Matching ====================

def matches_condition(customer: Dict[str, Any], condition: SegmentCondition, now: datetime) -> bool:
    actual = get_customer_field(customer, condition.field, now)
    return apply_operator(actual, condition.operator, condition.value, now)


def matches_group(customer: Dict[str, Any], group: SegmentGroup, now: datetime) -> bool:
    if not group.conditions:
        return True
    results = (matches_condition(customer, c, now) for c in group.conditions)
    return any(results) if group.group_operator == "OR" else all(results)


def matches_groups(customer: Dict[str, Any], groups: List[SegmentGroup], now: datetime) -> bool:
    return all(matches_group(customer, group, now) for group in groups)


def filter_customers(customers: List[Dict[str, Any]], groups: List[SegmentGroup], now: datetime) -> List[Dict[str, Any]]:
    return [customer for customer in customers if matches_groups(customer, groups, now)]


async def resolve_segment_customers(store_id: str, segment_id: Optional[str], now: datetime) -> List[Dict[str, Any]]:
    """Customers a campaign or journey targets; a missing segment means everyone."""
    customers = await db_service.get_customers(store_id)
    if not segment_id or segment_id.lower() == "all":
        return customers
    document = await db_service.get_segment(segment_id, store_id)
    if not document:
        logger.warning(f"Segment {segment_id} not found for store {store_id}; targeting all customers")
        return customers
    segment = Segment.model_validate(document)
    if segment.targets_everyone:
        return customers
    return filter_customers(customers, segment.condition_groups, now)


async def refresh_segment_counts(store_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, int]:
    """Recount every segment flagged `needs_update` and clear the flag."""
    now = now or utc_now()
    result = {"refreshed": 0, "errors": 0}
    customers_by_store: Dict[str, List[Dict[str, Any]]] = {}

    for document in await db_service.get_segments_needing_update():
        if store_id and document.get("store_id") != store_id:
            continue
        try:
            segment = Segment.model_validate(document)
            if segment.store_id not in customers_by_store:
                customers_by_store[segment.store_id] = await db_service.get_customers(segment.store_id)
            customers = customers_by_store[segment.store_id]
            count = len(customers) if segment.targets_everyone else len(
                filter_customers(customers, segment.condition_groups, now)
            )
            await db_service.update_segment(segment.id, {
                "customer_count": count,
                "needs_update": False,
                "last_evaluated_at": now,
            })
            result["refreshed"] += 1
        except Exception:
            logger.exception(f"Failed to refresh segment {document.get('id')}")
            result["errors"] += 1

    if result["refreshed"] or result["errors"]:
        logger.info(f"Segment counts refreshed: {result}")
    return result
