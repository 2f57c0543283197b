# /engage/journeys/executor.py

"""
Walks one enrollment through a journey graph.

Execution is synchronous along the graph until the enrollment reaches a node
that has to wait (a delay, an event wait, a pending goal, a scheduled retry)
or leaves the journey. Waiting is persisted as a ScheduledExecution or as
`waiting_for_*` fields on the enrollment; the step processor and the
WhatsApp event router pick it up from there.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from engage.campaigns.personalization import customer_values, personalize, personalize_value
from engage.config.settings import settings
from engage.journeys.condition_evaluator import ExecutionContext, evaluate_conditions, to_number
from engage.models.common import parse_datetime
from engage.models.journey import (
    EnrollmentContext, EnrollmentStatus, Journey, JourneyEdge, JourneyEnrollment,
    JourneyNode, ScheduledExecution,
)
from engage.services.db_service import db_service
from engage.services.shopify_service import shopify_service
from engage.services.whatsapp_service import whatsapp_service
from engage.utils.errors import JourneyNotFound, WhatsAppNotConfigured, WhatsAppSendError
from engage.utils.metrics import journey_enrollment_counter, journey_node_counter

logger = logging.getLogger(__name__)

DELAY_UNITS_SECONDS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
    "weeks": 604800,
}
# Guards against editor graphs that loop without a delay in between.
MAX_NODES_PER_PASS = 50
COMPLETED_REASONS = ("completed", "goal_achieved")


# ==================== Pure helpers ====================

def duration_to_timedelta(amount: Any, unit: Optional[str]) -> Optional[timedelta]:
    number = to_number(amount)
    if number is None or number <= 0:
        return None
    seconds = DELAY_UNITS_SECONDS.get((unit or "hours").lower().rstrip("s") + "s")
    if seconds is None:
        return None
    return timedelta(seconds=number * seconds)


def compute_retry_delay_ms(config: Dict[str, Any], attempt: int) -> int:
    """
    Delay before retry number `attempt + 1` of a failed action node.
    Linear: base * attempt. Exponential (default): base * 2^(attempt - 1).
    Capped at `retryMaxDelayMs`, else at 32x the base delay.
    """
    base = to_number(config.get("retryDelayMs"))
    if base is None and to_number(config.get("retryDelayMinutes")) is not None:
        base = to_number(config.get("retryDelayMinutes")) * 60000
    if base is None or base <= 0:
        base = settings.journey_retry_base_ms

    strategy = str(config.get("retryStrategy") or "exponential").lower()
    attempt = max(attempt, 1)
    delay = base * attempt if strategy == "linear" else base * (2 ** (attempt - 1))

    max_delay = to_number(config.get("retryMaxDelayMs")) or base * 32
    return int(min(delay, max_delay))


def pick_variant(variants: List[Dict[str, Any]], rand: Callable[[], float] = random.random) -> Dict[str, Any]:
    """Weighted random choice; non-positive total weight falls back to equal weights."""
    weights = [max(to_number(v.get("weight")) or 0.0, 0.0) for v in variants]
    total = sum(weights)
    if total <= 0:
        weights = [1.0] * len(variants)
        total = float(len(variants))

    threshold = rand() * total
    cumulative = 0.0
    for variant, weight in zip(variants, weights):
        cumulative += weight
        if threshold < cumulative:
            return variant
    return variants[-1]


def find_edge_by_label(edges: List[JourneyEdge], label: Optional[str], handle: Optional[str] = None) -> Optional[JourneyEdge]:
    if label:
        wanted = label.strip().lower()
        for edge in edges:
            if edge.label and edge.label.strip().lower() == wanted:
                return edge
    if handle:
        for edge in edges:
            if edge.source_handle == handle:
                return edge
    return None


def build_context(enrollment: JourneyEnrollment) -> ExecutionContext:
    trigger_event = enrollment.context.trigger_event or {}
    payload = trigger_event.get("payload") or {}
    return {
        "customer": enrollment.context.variables.get("customer") or payload.get("customer") or {},
        "order": payload if "line_items" in payload else None,
        "product": None,
        "trigger_event": payload,
        "variables": enrollment.context.variables,
    }


# ==================== Persistence helpers ====================

async def load_journey(journey_id: str) -> Journey:
    document = await db_service.get_journey(journey_id)
    if not document:
        raise JourneyNotFound(journey_id)
    return Journey.model_validate(document)


async def save_enrollment(enrollment: JourneyEnrollment, now: datetime) -> None:
    enrollment.last_activity_at = now
    await db_service.save_enrollment(enrollment.model_dump())


async def log_activity(
    enrollment: JourneyEnrollment,
    node_id: Optional[str],
    event_type: str,
    data: Optional[Dict[str, Any]],
    now: datetime
) -> None:
    await db_service.log_journey_activity({
        "store_id": enrollment.store_id,
        "journey_id": enrollment.journey_id,
        "enrollment_id": enrollment.id,
        "customer_id": enrollment.customer_id,
        "node_id": node_id,
        "event_type": event_type,
        "data": data or {},
        "timestamp": now,
    })


# ==================== Entry points ====================

async def start_journey_execution(
    journey: Journey,
    customer: Dict[str, Any],
    trigger_event: Dict[str, Any],
    now: datetime
) -> JourneyEnrollment:
    """Create an active enrollment for `customer` and run it from the first node."""
    enrollment = JourneyEnrollment(
        store_id=journey.store_id,
        journey_id=journey.id,
        customer_id=str(customer["id"]),
        email=customer.get("email"),
        phone=customer.get("phone"),
        entered_at=now,
        last_activity_at=now,
        context=EnrollmentContext(trigger_event=trigger_event, variables={"customer": customer}),
    )
    entry_node_id = journey.entry_node_id()
    enrollment.current_node_id = entry_node_id
    await save_enrollment(enrollment, now)
    journey_enrollment_counter.labels(source=str(trigger_event.get("type") or "manual")).inc()
    await log_activity(enrollment, None, "journey_started", {"trigger": trigger_event.get("type")}, now)
    logger.info(f"Customer {enrollment.customer_id} entered journey {journey.id} as {enrollment.id}")

    if not entry_node_id:
        await exit_journey(enrollment, "no_path", now)
        return enrollment

    await execute_node(journey, enrollment, entry_node_id, now)
    return enrollment


async def execute_node(
    journey: Journey,
    enrollment: JourneyEnrollment,
    node_id: str,
    now: datetime,
    depth: int = 0
) -> None:
    node = journey.get_node(node_id)
    if node is None:
        await exit_journey(enrollment, "no_path", now)
        return
    if depth >= MAX_NODES_PER_PASS:
        logger.error(f"Journey {journey.id} ran {depth} nodes without waiting; exiting {enrollment.id}")
        await exit_journey(enrollment, "loop_detected", now)
        return

    enrollment.current_node_id = node.id
    enrollment.status = EnrollmentStatus.ACTIVE
    await log_activity(enrollment, node.id, "node_entered", {"type": node.type, "subtype": node.kind}, now)
    journey_node_counter.labels(node_type=node.type, status="entered").inc()

    node_type = node.type.lower()
    if node_type == "action":
        await _execute_action(journey, enrollment, node, now, depth)
    elif node_type in ("delay", "wait"):
        await _execute_delay(journey, enrollment, node, now, depth)
    elif node_type in ("experiment", "ab_test") or (node_type == "condition" and node.kind in ("ab_test", "experiment", "split")):
        await _execute_experiment(journey, enrollment, node, now, depth)
    elif node_type == "condition":
        await _execute_condition(journey, enrollment, node, now, depth)
    elif node_type == "goal":
        await _execute_goal(journey, enrollment, node, now)
    elif node_type in ("exit", "end"):
        await exit_journey(enrollment, node.data.get("reason") or "completed", now)
    else:
        await move_to_next_node(journey, enrollment, node.id, now, depth)


async def move_to_next_node(
    journey: Journey,
    enrollment: JourneyEnrollment,
    node_id: str,
    now: datetime,
    depth: int = 0
) -> None:
    edges = journey.outgoing_edges(node_id)
    if not edges:
        _mark_completed(enrollment, node_id)
        await exit_journey(enrollment, "completed", now)
        return
    await follow_edge(journey, enrollment, node_id, edges[0], now, depth)


async def follow_edge(
    journey: Journey,
    enrollment: JourneyEnrollment,
    node_id: str,
    edge: JourneyEdge,
    now: datetime,
    depth: int = 0
) -> None:
    _mark_completed(enrollment, node_id)
    if journey.get_node(edge.target) is None:
        await exit_journey(enrollment, "no_path", now)
        return
    await execute_node(journey, enrollment, edge.target, now, depth + 1)


async def exit_journey(enrollment: JourneyEnrollment, reason: str, now: datetime) -> None:
    if reason in COMPLETED_REASONS:
        enrollment.status = EnrollmentStatus.COMPLETED
        enrollment.completed_at = now
    else:
        enrollment.status = EnrollmentStatus.EXITED
    enrollment.exit_reason = reason
    enrollment.waiting_for_event = None
    enrollment.waiting_for_event_timeout = None
    enrollment.waiting_for_goal = False
    await db_service.cancel_scheduled_executions(enrollment.id, now)
    await save_enrollment(enrollment, now)
    await log_activity(enrollment, enrollment.current_node_id, "journey_exited", {"reason": reason}, now)


def _mark_completed(enrollment: JourneyEnrollment, node_id: str) -> None:
    if node_id not in enrollment.completed_nodes:
        enrollment.completed_nodes.append(node_id)


# ==================== Actions & retries ====================

async def _execute_action(journey: Journey, enrollment: JourneyEnrollment, node: JourneyNode, now: datetime, depth: int) -> None:
    try:
        kind = node.kind
        if kind == "send_whatsapp":
            await _send_whatsapp(enrollment, node, now)
        elif kind == "add_tag":
            await _add_tag(enrollment, node, now)
        elif kind == "update_property":
            await _update_property(enrollment, node, now)
        else:
            logger.warning(f"Unknown action '{kind}' on node {node.id} of journey {journey.id}; skipping")
    except Exception as e:
        logger.error(f"Action node {node.id} failed for enrollment {enrollment.id}: {e}")
        journey_node_counter.labels(node_type="action", status="failed").inc()
        await log_activity(enrollment, node.id, "node_error", {"error": str(e)}, now)
        record_failure(enrollment, node.id, str(e), now)
        await schedule_retry_if_possible(enrollment, node, str(e), now)
        return

    journey_node_counter.labels(node_type="action", status="success").inc()
    await move_to_next_node(journey, enrollment, node.id, now, depth)


async def _send_whatsapp(enrollment: JourneyEnrollment, node: JourneyNode, now: datetime) -> None:
    data = node.data
    phone = enrollment.phone or (enrollment.context.variables.get("customer") or {}).get("phone")
    if not phone:
        raise WhatsAppSendError("Enrollment has no phone number")
    if not whatsapp_service.is_configured:
        raise WhatsAppNotConfigured("WhatsApp credentials are not configured")

    values = customer_values(enrollment.context.variables.get("customer"))
    metadata = {
        "store_id": enrollment.store_id,
        "journey_id": enrollment.journey_id,
        "enrollment_id": enrollment.id,
        "node_id": node.id,
    }
    template = data.get("template") or data.get("templateName")
    if template:
        wamid = await whatsapp_service.send_template_message(
            phone,
            template,
            language=data.get("language") or "en",
            components=personalize_value(data.get("components") or [], values),
            metadata=metadata,
        )
    elif data.get("message"):
        wamid = await whatsapp_service.send_text_message(phone, personalize(data["message"], values), metadata=metadata)
    else:
        raise WhatsAppSendError("send_whatsapp node has neither a template nor a message")

    if not wamid:
        raise WhatsAppSendError(f"WhatsApp API did not accept the message to {phone}")

    enrollment.metadata.whatsapp_message_id = wamid
    await log_activity(enrollment, node.id, "whatsapp_sent", {"message_id": wamid, "template": template}, now)


async def _add_tag(enrollment: JourneyEnrollment, node: JourneyNode, now: datetime) -> None:
    raw = node.data.get("tags") or node.data.get("tag") or []
    tags = [t.strip() for t in (raw.split(",") if isinstance(raw, str) else raw) if t and t.strip()]
    if not tags:
        raise ValueError("add_tag node has no tags configured")
    merged = await shopify_service.add_customer_tags(enrollment.customer_id, tags)

    customer = enrollment.context.variables.get("customer") or {}
    customer["tags"] = ", ".join(merged)
    enrollment.context.variables["customer"] = customer
    await log_activity(enrollment, node.id, "tag_added", {"tags": tags}, now)


async def _update_property(enrollment: JourneyEnrollment, node: JourneyNode, now: datetime) -> None:
    data = node.data
    key = data.get("key") or data.get("property")
    if not key:
        raise ValueError("update_property node has no property key")
    value = personalize(str(data.get("value", "")), customer_values(enrollment.context.variables.get("customer")))
    await shopify_service.set_customer_metafield(
        enrollment.customer_id,
        data.get("namespace") or "engage",
        key,
        value,
        data.get("valueType") or "single_line_text_field",
    )
    enrollment.context.variables[key] = value
    await log_activity(enrollment, node.id, "property_updated", {"key": key, "value": value}, now)


def record_failure(enrollment: JourneyEnrollment, node_id: str, error: str, now: datetime) -> None:
    enrollment.metadata.failures.append({"node_id": node_id, "error": error, "at": now})


async def schedule_retry_if_possible(enrollment: JourneyEnrollment, node: JourneyNode, error: str, now: datetime) -> bool:
    """
    Schedule another attempt of a failed action, or fail the enrollment once
    the node has used up its attempts. Returns True when a retry was scheduled.
    """
    attempts = sum(1 for failure in enrollment.metadata.failures if failure.get("node_id") == node.id)
    max_attempts = int(
        to_number(node.data.get("retryMaxAttempts"))
        or to_number(node.data.get("maxAttempts"))
        or settings.journey_retry_max_attempts
    )

    if attempts >= max_attempts:
        enrollment.status = EnrollmentStatus.FAILED
        enrollment.exit_reason = "node_failure"
        await db_service.cancel_scheduled_executions(enrollment.id, now)
        await save_enrollment(enrollment, now)
        await log_activity(enrollment, node.id, "journey_failed", {"attempts": attempts, "error": error}, now)
        logger.warning(f"Enrollment {enrollment.id} failed at node {node.id} after {attempts} attempts")
        return False

    delay_ms = compute_retry_delay_ms(node.data, attempts)
    resume_at = now + timedelta(milliseconds=delay_ms)
    execution = ScheduledExecution(
        store_id=enrollment.store_id,
        enrollment_id=enrollment.id,
        journey_id=enrollment.journey_id,
        node_id=node.id,
        resume_at=resume_at,
        metadata={"kind": "retry", "attempt": attempts + 1, "reason": error},
        created_at=now,
    )
    await db_service.create_scheduled_execution(execution.model_dump())
    enrollment.status = EnrollmentStatus.WAITING
    await save_enrollment(enrollment, now)
    await log_activity(enrollment, node.id, "retry_scheduled", {"attempt": attempts + 1, "resume_at": resume_at}, now)
    return True


# ==================== Delays ====================

async def _execute_delay(journey: Journey, enrollment: JourneyEnrollment, node: JourneyNode, now: datetime, depth: int) -> None:
    data = node.data
    mode = (data.get("mode") or data.get("delayType") or "").lower()
    if not mode:
        mode = "event" if data.get("eventType") else "until" if data.get("waitUntil") else "duration"

    if mode == "event":
        enrollment.waiting_for_event = data.get("eventType") or data.get("event")
        timeout = duration_to_timedelta(data.get("timeout"), data.get("timeoutUnit") or "hours")
        enrollment.waiting_for_event_timeout = now + timeout if timeout else None
        enrollment.status = EnrollmentStatus.WAITING
        await save_enrollment(enrollment, now)
        await log_activity(enrollment, node.id, "waiting_for_event", {
            "event": enrollment.waiting_for_event,
            "timeout": enrollment.waiting_for_event_timeout,
        }, now)
        return

    if mode == "until":
        resume_at = parse_datetime(data.get("waitUntil"))
    else:
        delta = duration_to_timedelta(data.get("duration"), data.get("unit"))
        resume_at = now + delta if delta else None

    if resume_at is None or resume_at <= now:
        await move_to_next_node(journey, enrollment, node.id, now, depth)
        return

    execution = ScheduledExecution(
        store_id=enrollment.store_id,
        enrollment_id=enrollment.id,
        journey_id=enrollment.journey_id,
        node_id=node.id,
        resume_at=resume_at,
        metadata={"kind": "delay"},
        created_at=now,
    )
    await db_service.create_scheduled_execution(execution.model_dump())
    enrollment.status = EnrollmentStatus.WAITING
    await save_enrollment(enrollment, now)
    await log_activity(enrollment, node.id, "delay_scheduled", {"resume_at": resume_at}, now)


# ==================== Branching ====================

async def _execute_condition(journey: Journey, enrollment: JourneyEnrollment, node: JourneyNode, now: datetime, depth: int) -> None:
    data = node.data
    conditions = data.get("conditions") or ([data["condition"]] if data.get("condition") else [])
    result = evaluate_conditions(conditions, build_context(enrollment))
    await log_activity(enrollment, node.id, "condition_evaluated", {"result": result}, now)

    edges = journey.outgoing_edges(node.id)
    if not edges:
        _mark_completed(enrollment, node.id)
        await exit_journey(enrollment, "no_path", now)
        return

    label = (data.get("trueLabel") or "Yes") if result else (data.get("falseLabel") or "No")
    edge = find_edge_by_label(edges, label, "true" if result else "false") or edges[0]
    await follow_edge(journey, enrollment, node.id, edge, now, depth)


async def _execute_experiment(journey: Journey, enrollment: JourneyEnrollment, node: JourneyNode, now: datetime, depth: int) -> None:
    variants = node.data.get("variants") or []
    if not variants:
        await move_to_next_node(journey, enrollment, node.id, now, depth)
        return

    assignment = enrollment.metadata.experiments.get(node.id)
    variant = None
    if assignment:
        variant = next((v for v in variants if str(v.get("id")) == str(assignment.get("variant_id"))), None)
    if variant is None:
        variant = pick_variant(variants)
        assignment = {"variant_id": variant.get("id"), "label": variant.get("label"), "assigned_at": now}
        enrollment.metadata.experiments[node.id] = assignment
        await log_activity(enrollment, node.id, "experiment_assigned", {"variant_id": variant.get("id")}, now)

    edges = journey.outgoing_edges(node.id)
    edge = find_edge_by_label(edges, variant.get("label"), str(variant.get("id")))
    if edge is None:
        enrollment.status = EnrollmentStatus.FAILED
        enrollment.exit_reason = "node_failure"
        await db_service.cancel_scheduled_executions(enrollment.id, now)
        await save_enrollment(enrollment, now)
        await log_activity(enrollment, node.id, "journey_failed", {"error": f"no edge for variant {variant.get('id')}"}, now)
        return

    await follow_edge(journey, enrollment, node.id, edge, now, depth)


# ==================== Goals ====================

async def check_goal(enrollment: JourneyEnrollment, node: JourneyNode) -> bool:
    data = node.data
    goal_type = str(data.get("goalType") or "order_any").lower()

    if goal_type == "tag_added":
        wanted = str(data.get("tag") or "").strip().lower()
        customer = await db_service.get_customer(enrollment.store_id, enrollment.customer_id) or {}
        tags = [t.strip().lower() for t in (customer.get("tags") or "").split(",")]
        return bool(wanted) and wanted in tags

    if goal_type == "link_clicked":
        return await db_service.has_journey_activity(enrollment.id, "link_clicked")

    orders = await db_service.get_customer_orders_since(enrollment.store_id, enrollment.customer_id, enrollment.entered_at)

    if goal_type == "order_value":
        threshold = to_number(data.get("orderThreshold")) or to_number(data.get("minValue")) or 0.0
        total = sum(to_number(order.get("total_price")) or 0.0 for order in orders)
        return bool(orders) and total >= threshold

    if goal_type == "product_purchased":
        product_id = str(data.get("productId") or "")
        return any(
            str(item.get("product_id")) == product_id
            for order in orders
            for item in order.get("line_items") or []
        )

    return len(orders) > 0


async def _execute_goal(journey: Journey, enrollment: JourneyEnrollment, node: JourneyNode, now: datetime) -> None:
    enrollment.goal_node_id = node.id
    if await check_goal(enrollment, node):
        enrollment.goal_achieved = True
        enrollment.waiting_for_goal = False
        _mark_completed(enrollment, node.id)
        await log_activity(enrollment, node.id, "goal_achieved", {"goal_type": node.data.get("goalType") or "order_any"}, now)
        await exit_journey(enrollment, "goal_achieved", now)
        return

    enrollment.waiting_for_goal = True
    enrollment.status = EnrollmentStatus.WAITING
    await save_enrollment(enrollment, now)
    await log_activity(enrollment, node.id, "goal_pending", {"goal_type": node.data.get("goalType") or "order_any"}, now)
