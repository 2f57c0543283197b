# /engage/journeys/event_router.py

"""
Feeds WhatsApp callbacks (delivery receipts, replies, button taps) into the
enrollments that are waiting on them.

A waiting node can configure what each outcome does through
`exitPaths[<outcome>]`, either as a bare action string or as
`{"action": "branch" | "wait" | "exit", "label": "<edge label>"}`.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from engage.journeys.executor import (
    exit_journey, find_edge_by_label, follow_edge, load_journey, log_activity, move_to_next_node,
)
from engage.models.common import utc_now
from engage.models.journey import EnrollmentStatus, Journey, JourneyEnrollment, JourneyNode
from engage.services.db_service import db_service
from engage.services.security_service import PhoneNormalizer
from engage.utils.errors import JourneyNotFound

logger = logging.getLogger(__name__)

DELIVERY_EVENTS = ("whatsapp_delivered", "whatsapp_read", "whatsapp_failed")
REPLY_EVENT = "whatsapp_replied"


def phone_variants(phone: str) -> List[str]:
    """Stored enrollment phones come from Shopify in mixed formats; WhatsApp sends bare digits."""
    digits = PhoneNormalizer.digits_of(phone)
    variants = {phone, digits, f"+{digits}", PhoneNormalizer.last_ten_digits(phone)}
    return [v for v in variants if v]


def exit_path(node: JourneyNode, outcome: str) -> Dict[str, Any]:
    paths = node.data.get("exitPaths") or {}
    path = paths.get(outcome)
    if isinstance(path, str):
        return {"action": path.lower()}
    if isinstance(path, dict):
        return {**path, "action": str(path.get("action") or "branch").lower()}
    return {}


async def _load(enrollment_doc: Dict[str, Any]) -> Optional[tuple]:
    enrollment = JourneyEnrollment.model_validate(enrollment_doc)
    try:
        journey = await load_journey(enrollment.journey_id)
    except JourneyNotFound:
        logger.warning(f"Enrollment {enrollment.id} points at missing journey {enrollment.journey_id}")
        return None
    node = journey.get_node(enrollment.current_node_id)
    if node is None:
        return None
    return journey, enrollment, node


async def _resume(
    journey: Journey,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    label: Optional[str],
    now: datetime
) -> None:
    enrollment.waiting_for_event = None
    enrollment.waiting_for_event_timeout = None
    enrollment.status = EnrollmentStatus.ACTIVE
    edge = find_edge_by_label(journey.outgoing_edges(node.id), label) if label else None
    if edge:
        await follow_edge(journey, enrollment, node.id, edge, now)
    else:
        await move_to_next_node(journey, enrollment, node.id, now)


async def _apply_path(
    journey: Journey,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    path: Dict[str, Any],
    outcome: str,
    now: datetime
) -> str:
    action = path.get("action")
    if action == "wait":
        return "waiting"
    if action == "exit":
        await exit_journey(enrollment, f"message_{outcome}", now)
        return "exited"
    await _resume(journey, enrollment, node, path.get("label") or outcome, now)
    return "advanced"


async def route_delivery_status(store_id: str, wamid: str, status: str, now: Optional[datetime] = None) -> Optional[str]:
    """Returns what happened to the enrollment, or None when no enrollment sent `wamid`."""
    now = now or utc_now()
    document = await db_service.find_enrollment_by_message_id(wamid)
    if not document or document.get("store_id") != store_id:
        return None
    loaded = await _load(document)
    if loaded is None:
        return None
    journey, enrollment, node = loaded

    await log_activity(enrollment, node.id, f"message_{status}", {"message_id": wamid}, now)
    if enrollment.status != EnrollmentStatus.WAITING or enrollment.waiting_for_event not in DELIVERY_EVENTS:
        return "logged"

    path = exit_path(node, status)
    if path:
        return await _apply_path(journey, enrollment, node, path, status, now)
    if enrollment.waiting_for_event == f"whatsapp_{status}":
        await _resume(journey, enrollment, node, None, now)
        return "advanced"
    if status == "failed":
        await exit_journey(enrollment, "message_failed", now)
        return "exited"
    return "waiting"


async def route_reply(store_id: str, phone: str, text: str, now: Optional[datetime] = None) -> int:
    """Advance every enrollment of this phone that waits for a reply. Returns how many moved."""
    now = now or utc_now()
    routed = 0
    for document in await db_service.find_enrollments_waiting_for_event(store_id, phone_variants(phone), REPLY_EVENT):
        try:
            loaded = await _load(document)
            if loaded is None:
                continue
            journey, enrollment, node = loaded
            enrollment.context.variables["last_reply"] = text
            await log_activity(enrollment, node.id, "whatsapp_replied", {"text": text[:500]}, now)
            path = exit_path(node, "replied")
            if path:
                await _apply_path(journey, enrollment, node, path, "replied", now)
            else:
                await _resume(journey, enrollment, node, None, now)
            routed += 1
        except Exception:
            logger.exception(f"Failed to route reply to enrollment {document.get('id')}")
    return routed


async def route_button_click(
    store_id: str,
    context_wamid: str,
    button_payload: str,
    button_text: Optional[str] = None,
    now: Optional[datetime] = None
) -> Optional[str]:
    now = now or utc_now()
    document = await db_service.find_enrollment_by_message_id(context_wamid)
    if not document or document.get("store_id") != store_id:
        return None
    loaded = await _load(document)
    if loaded is None:
        return None
    journey, enrollment, node = loaded

    enrollment.context.variables["last_button"] = button_payload
    await log_activity(enrollment, node.id, "button_clicked", {"payload": button_payload, "text": button_text}, now)

    configured = (node.data.get("buttonPaths") or {}).get(button_payload)
    if isinstance(configured, dict) and str(configured.get("action") or "").lower() == "exit":
        await exit_journey(enrollment, "button_exit", now)
        return "exited"
    label = configured.get("label") if isinstance(configured, dict) else configured

    edges = journey.outgoing_edges(node.id)
    edge = find_edge_by_label(edges, label) or find_edge_by_label(edges, button_text)
    if edge is None and enrollment.status != EnrollmentStatus.WAITING:
        # The click arrived after the enrollment moved on; keep it as activity only.
        return "logged"

    # A pending delay on the current node is superseded by the click.
    await db_service.cancel_scheduled_executions(enrollment.id, now)
    enrollment.waiting_for_event = None
    enrollment.waiting_for_event_timeout = None
    enrollment.status = EnrollmentStatus.ACTIVE
    if edge:
        await follow_edge(journey, enrollment, node.id, edge, now)
    else:
        await move_to_next_node(journey, enrollment, node.id, now)
    return "advanced"
