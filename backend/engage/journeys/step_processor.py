# /engage/journeys/step_processor.py

"""
Cron pass that resumes journeys which were waiting on time.

Three kinds of waits come due here: scheduled executions (delays and action
retries), event waits whose timeout has passed, and goal waits whose goal
may have been met since the last pass.
"""

import logging
from datetime import datetime
from typing import Dict, Optional, TypedDict

from engage.config.settings import settings
from engage.journeys.executor import (
    check_goal, execute_node, exit_journey, find_edge_by_label, follow_edge,
    load_journey, log_activity, move_to_next_node,
)
from engage.models.common import utc_now
from engage.models.journey import (
    EnrollmentStatus, Journey, JourneyEnrollment, ScheduledExecution, ScheduledExecutionStatus,
)
from engage.services.db_service import db_service
from engage.utils.errors import JourneyNotFound
from engage.utils.metrics import scheduled_step_counter

logger = logging.getLogger(__name__)


class StepResult(TypedDict):
    processed: int
    failed: int
    timed_out: int
    goals_completed: int


async def _journey_for(journey_id: str, cache: Dict[str, Optional[Journey]]) -> Optional[Journey]:
    if journey_id not in cache:
        try:
            cache[journey_id] = await load_journey(journey_id)
        except JourneyNotFound:
            cache[journey_id] = None
    return cache[journey_id]


async def _fail_execution(execution: ScheduledExecution, reason: str, now: datetime) -> None:
    logger.warning(f"Scheduled execution {execution.id} failed: {reason}")
    await db_service.mark_scheduled_execution(execution.id, ScheduledExecutionStatus.FAILED.value, now, error=reason)
    scheduled_step_counter.labels(status="failed").inc()


async def _run_due_executions(now: datetime, cache: Dict[str, Optional[Journey]], result: StepResult) -> None:
    documents = await db_service.get_due_scheduled_executions(now, settings.scheduled_step_batch_size)
    for document in documents:
        execution = ScheduledExecution.model_validate(document)
        try:
            enrollment_doc = await db_service.get_enrollment(execution.enrollment_id)
            if not enrollment_doc:
                await _fail_execution(execution, "enrollment_not_found", now)
                result["failed"] += 1
                continue
            journey = await _journey_for(execution.journey_id, cache)
            if journey is None:
                await _fail_execution(execution, "journey_not_found", now)
                result["failed"] += 1
                continue
            node = journey.get_node(execution.node_id)
            if node is None:
                await _fail_execution(execution, "node_not_found", now)
                result["failed"] += 1
                continue

            enrollment = JourneyEnrollment.model_validate(enrollment_doc)
            if not enrollment.is_open:
                await db_service.mark_scheduled_execution(execution.id, ScheduledExecutionStatus.CANCELLED.value, now)
                continue

            if not await db_service.mark_scheduled_execution(execution.id, ScheduledExecutionStatus.PROCESSED.value, now):
                # Claimed by a concurrent pass.
                continue

            enrollment.status = EnrollmentStatus.ACTIVE
            if execution.metadata.get("kind") == "retry":
                logger.info(f"Retrying node {node.id} for enrollment {enrollment.id} (attempt {execution.metadata.get('attempt')})")
                await execute_node(journey, enrollment, node.id, now)
            else:
                await move_to_next_node(journey, enrollment, node.id, now)

            result["processed"] += 1
            scheduled_step_counter.labels(status="processed").inc()
        except Exception as e:
            logger.exception(f"Error processing scheduled execution {execution.id}")
            await db_service.mark_scheduled_execution(
                execution.id, ScheduledExecutionStatus.FAILED.value, now, error=str(e), only_pending=False
            )
            scheduled_step_counter.labels(status="failed").inc()
            result["failed"] += 1


async def _run_event_timeouts(now: datetime, cache: Dict[str, Optional[Journey]], result: StepResult) -> None:
    for document in await db_service.get_timed_out_event_waits(now, settings.scheduled_step_batch_size):
        try:
            enrollment = JourneyEnrollment.model_validate(document)
            journey = await _journey_for(enrollment.journey_id, cache)
            if journey is None:
                await exit_journey(enrollment, "journey_not_found", now)
                continue

            event = enrollment.waiting_for_event
            node = journey.get_node(enrollment.current_node_id)
            enrollment.waiting_for_event = None
            enrollment.waiting_for_event_timeout = None
            enrollment.status = EnrollmentStatus.ACTIVE
            await log_activity(enrollment, enrollment.current_node_id, "event_timeout", {"event": event}, now)
            result["timed_out"] += 1

            if node is None:
                await exit_journey(enrollment, "no_path", now)
                continue
            edge = find_edge_by_label(journey.outgoing_edges(node.id), node.data.get("timeoutLabel") or "Timeout", "timeout")
            if edge:
                await follow_edge(journey, enrollment, node.id, edge, now)
            else:
                await move_to_next_node(journey, enrollment, node.id, now)
        except Exception:
            logger.exception(f"Error resolving event timeout for enrollment {document.get('id')}")
            result["failed"] += 1


async def _run_goal_checks(now: datetime, cache: Dict[str, Optional[Journey]], result: StepResult) -> None:
    for document in await db_service.get_goal_waiting_enrollments(settings.scheduled_step_batch_size):
        try:
            enrollment = JourneyEnrollment.model_validate(document)
            journey = await _journey_for(enrollment.journey_id, cache)
            node = journey.get_node(enrollment.goal_node_id) if journey else None
            if node is None:
                continue
            if await check_goal(enrollment, node):
                await execute_node(journey, enrollment, node.id, now)
                result["goals_completed"] += 1
        except Exception:
            logger.exception(f"Error re-checking goal for enrollment {document.get('id')}")
            result["failed"] += 1


async def process_scheduled_journey_steps(now: Optional[datetime] = None) -> StepResult:
    now = now or utc_now()
    result: StepResult = {"processed": 0, "failed": 0, "timed_out": 0, "goals_completed": 0}
    cache: Dict[str, Optional[Journey]] = {}

    await _run_due_executions(now, cache, result)
    await _run_event_timeouts(now, cache, result)
    await _run_goal_checks(now, cache, result)

    if any(result.values()):
        logger.info(f"Scheduled journey steps: {result}")
    return result
