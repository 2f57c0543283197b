# /engage/journeys/engine.py

"""
Batch enrollment for journeys that are not started by a webhook: segment
entry, abandoned carts and date based triggers. Runs from the scheduler and
can be invoked on demand (with `dry_run`) from the admin API.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TypedDict

from engage.config.settings import settings
from engage.journeys.condition_evaluator import to_number
from engage.journeys.executor import start_journey_execution
from engage.journeys.step_processor import process_scheduled_journey_steps
from engage.journeys.trigger_matcher import can_enter_journey, extract_trigger_config, is_test_recipient
from engage.models.common import parse_datetime, utc_now
from engage.models.journey import Journey, JourneyNode, JourneyStatus
from engage.models.segment import Segment
from engage.segments.evaluator import filter_customers
from engage.services.db_service import db_service

logger = logging.getLogger(__name__)

TRIGGER_SUBTYPES = {
    "segment": "segment_joined",
    "segment_joined": "segment_joined",
    "abandoned_cart": "abandoned_cart",
    "custom_date": "date_time",
    "birthday": "date_time",
    "date_time": "date_time",
    "webhook": "event_trigger",
    "order_placed": "event_trigger",
    "tag_added": "event_trigger",
    "first_purchase": "event_trigger",
    "repeat_purchase": "event_trigger",
}


class EngineResult(TypedDict):
    journeys: int
    candidates: int
    enrolled: int
    skipped: int
    errors: List[str]


def get_trigger_subtype(node: JourneyNode) -> str:
    config = extract_trigger_config(node)
    raw = node.subtype or config.get("triggerType") or config.get("type") or ""
    return TRIGGER_SUBTYPES.get(str(raw).lower(), "manual_entry")


def _date_field_value(customer: Dict[str, Any], field: str) -> Optional[datetime]:
    if customer.get(field):
        return parse_datetime(customer[field])
    for metafield in customer.get("metafields") or []:
        if metafield.get("key") == field:
            return parse_datetime(metafield.get("value"))
    return None


def matches_today(customer: Dict[str, Any], field: str, now: datetime) -> bool:
    """Month/day match of a customer date, e.g. a birthday or a signup anniversary."""
    value = _date_field_value(customer, field)
    if value is None:
        return False
    if field == "created_at" and value.year >= now.year:
        return False
    return (value.month, value.day) == (now.month, now.day)


async def _segment_candidates(journey: Journey, config: Dict[str, Any], now: datetime) -> List[Dict[str, Any]]:
    segment_id = config.get("segmentId") or journey.segment_id
    if not segment_id:
        return []
    document = await db_service.get_segment(segment_id, journey.store_id)
    if not document:
        raise LookupError(f"Segment {segment_id} not found for journey {journey.id}")
    segment = Segment.model_validate(document)
    customers = await db_service.get_customers(journey.store_id)
    return filter_customers(customers, segment.condition_groups, now)


async def _abandoned_cart_candidates(journey: Journey, config: Dict[str, Any], now: datetime) -> List[Dict[str, Any]]:
    hours = to_number(config.get("hours")) or settings.abandoned_cart_default_hours
    checkouts = await db_service.get_abandoned_checkouts(journey.store_id, now - timedelta(hours=hours))
    candidates = []
    for checkout in checkouts:
        customer = checkout.get("customer")
        if isinstance(customer, dict) and customer.get("id") is not None:
            candidates.append({
                **customer,
                "id": str(customer["id"]),
                "phone": customer.get("phone") or checkout.get("phone"),
                "email": customer.get("email") or checkout.get("email"),
            })
    return candidates


async def _date_candidates(journey: Journey, config: Dict[str, Any], now: datetime) -> List[Dict[str, Any]]:
    field = config.get("dateField") or ("birthday" if str(config.get("type") or "").lower() == "birthday" else "created_at")
    customers = await db_service.get_customers(journey.store_id)
    return [customer for customer in customers if matches_today(customer, field, now)]


CANDIDATE_RESOLVERS = {
    "segment_joined": _segment_candidates,
    "abandoned_cart": _abandoned_cart_candidates,
    "date_time": _date_candidates,
}


async def run_journey_engine(
    store_id: Optional[str] = None,
    now: Optional[datetime] = None,
    include_test: bool = False,
    dry_run: bool = False
) -> EngineResult:
    now = now or utc_now()
    result: EngineResult = {"journeys": 0, "candidates": 0, "enrolled": 0, "skipped": 0, "errors": []}

    for document in await db_service.get_active_journeys(store_id):
        try:
            journey = Journey.model_validate(document)
        except ValueError as e:
            result["errors"].append(f"journey {document.get('id')}: {e}")
            continue
        if journey.status != JourneyStatus.ACTIVE:
            continue
        if journey.test_mode and not include_test:
            continue

        triggers = journey.trigger_nodes()
        if not triggers:
            logger.warning(f"Journey {journey.id} has no trigger node")
            continue
        subtype = get_trigger_subtype(triggers[0])
        resolver = CANDIDATE_RESOLVERS.get(subtype)
        if resolver is None:
            # Webhook and manual triggers are handled elsewhere.
            continue

        result["journeys"] += 1
        try:
            candidates = await resolver(journey, extract_trigger_config(triggers[0]), now)
        except Exception as e:
            logger.error(f"Failed to resolve candidates for journey {journey.id}: {e}")
            result["errors"].append(f"journey {journey.id}: {e}")
            continue

        for customer in candidates:
            result["candidates"] += 1
            customer_id = str(customer["id"])
            if journey.test_mode and not is_test_recipient(journey, customer.get("phone")):
                result["skipped"] += 1
                continue
            try:
                if not await can_enter_journey(journey, customer_id, now):
                    result["skipped"] += 1
                    continue
                if dry_run:
                    logger.info(f"Dry run: would enroll customer {customer_id} into journey {journey.id}")
                    continue
                await start_journey_execution(journey, customer, {"type": subtype, "payload": {"customer": customer}}, now)
                result["enrolled"] += 1
            except Exception as e:
                logger.exception(f"Failed to enroll customer {customer_id} into journey {journey.id}")
                result["errors"].append(f"customer {customer_id} in journey {journey.id}: {e}")

    if not dry_run:
        await process_scheduled_journey_steps(now)

    logger.info(
        f"Journey engine run: {result['journeys']} journeys, {result['candidates']} candidates, "
        f"{result['enrolled']} enrolled, {len(result['errors'])} errors"
    )
    return result
