# backend/tests/unit/test_step_processor.py

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from engage.journeys.step_processor import process_scheduled_journey_steps
from engage.models.journey import Journey

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

JOURNEY = Journey.model_validate({
    "id": "j1",
    "store_id": "store_test",
    "name": "Drip",
    "status": "active",
    "nodes": [
        {"id": "wait", "type": "delay", "data": {"eventType": "whatsapp_read", "timeoutLabel": "Not read"}},
        {"id": "send", "type": "action", "subtype": "send_whatsapp", "data": {"message": "Hi"}},
        {"id": "nudge", "type": "action", "subtype": "send_whatsapp", "data": {"message": "Still there?"}},
        {"id": "goal", "type": "goal", "data": {"goalType": "order_any"}},
    ],
    "edges": [
        {"id": "e1", "source": "wait", "target": "send", "label": "Read"},
        {"id": "e2", "source": "wait", "target": "nudge", "label": "Not read"},
    ],
})


def _execution(**overrides):
    data = {
        "id": "sched_1", "store_id": "store_test", "enrollment_id": "enroll_1", "journey_id": "j1",
        "node_id": "wait", "resume_at": NOW - timedelta(minutes=1), "metadata": {"kind": "delay"},
    }
    data.update(overrides)
    return data


def _enrollment(**overrides):
    data = {"id": "enroll_1", "store_id": "store_test", "journey_id": "j1", "customer_id": "c1", "status": "waiting", "current_node_id": "wait"}
    data.update(overrides)
    return data


@pytest.fixture
def db(mocker):
    mock = mocker.patch("engage.journeys.step_processor.db_service", new_callable=AsyncMock)
    mock.get_due_scheduled_executions.return_value = []
    mock.get_timed_out_event_waits.return_value = []
    mock.get_goal_waiting_enrollments.return_value = []
    mock.mark_scheduled_execution.return_value = True
    mocker.patch("engage.journeys.step_processor.load_journey", new_callable=AsyncMock, return_value=JOURNEY)
    return mock


@pytest.fixture
def engine(mocker):
    return {
        "execute_node": mocker.patch("engage.journeys.step_processor.execute_node", new_callable=AsyncMock),
        "move_to_next_node": mocker.patch("engage.journeys.step_processor.move_to_next_node", new_callable=AsyncMock),
        "follow_edge": mocker.patch("engage.journeys.step_processor.follow_edge", new_callable=AsyncMock),
        "exit_journey": mocker.patch("engage.journeys.step_processor.exit_journey", new_callable=AsyncMock),
        "log_activity": mocker.patch("engage.journeys.step_processor.log_activity", new_callable=AsyncMock),
        "check_goal": mocker.patch("engage.journeys.step_processor.check_goal", new_callable=AsyncMock),
    }


@pytest.mark.asyncio
async def test_due_delay_moves_to_next_node(db, engine):
    db.get_due_scheduled_executions.return_value = [_execution()]
    db.get_enrollment.return_value = _enrollment()

    result = await process_scheduled_journey_steps(NOW)

    assert result["processed"] == 1
    engine["move_to_next_node"].assert_awaited_once()
    assert db.mark_scheduled_execution.await_args.args[:2] == ("sched_1", "processed")


@pytest.mark.asyncio
async def test_due_retry_re_executes_node(db, engine):
    db.get_due_scheduled_executions.return_value = [_execution(node_id="send", metadata={"kind": "retry", "attempt": 2})]
    db.get_enrollment.return_value = _enrollment(current_node_id="send")

    await process_scheduled_journey_steps(NOW)

    engine["execute_node"].assert_awaited_once()
    assert engine["execute_node"].await_args.args[2] == "send"


@pytest.mark.asyncio
async def test_execution_claimed_elsewhere_is_skipped(db, engine):
    db.get_due_scheduled_executions.return_value = [_execution()]
    db.get_enrollment.return_value = _enrollment()
    db.mark_scheduled_execution.return_value = False

    result = await process_scheduled_journey_steps(NOW)

    assert result["processed"] == 0
    engine["move_to_next_node"].assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_enrollment_fails_execution(db, engine):
    db.get_due_scheduled_executions.return_value = [_execution()]
    db.get_enrollment.return_value = None

    result = await process_scheduled_journey_steps(NOW)

    assert result["failed"] == 1
    assert db.mark_scheduled_execution.await_args.kwargs["error"] == "enrollment_not_found"


@pytest.mark.asyncio
async def test_closed_enrollment_cancels_execution(db, engine):
    db.get_due_scheduled_executions.return_value = [_execution()]
    db.get_enrollment.return_value = _enrollment(status="exited")

    await process_scheduled_journey_steps(NOW)

    assert db.mark_scheduled_execution.await_args.args[1] == "cancelled"
    engine["move_to_next_node"].assert_not_awaited()


@pytest.mark.asyncio
async def test_error_marks_execution_failed(db, engine):
    db.get_due_scheduled_executions.return_value = [_execution()]
    db.get_enrollment.return_value = _enrollment()
    engine["move_to_next_node"].side_effect = RuntimeError("boom")

    result = await process_scheduled_journey_steps(NOW)

    assert result["failed"] == 1
    last = db.mark_scheduled_execution.await_args
    assert last.args[1] == "failed"
    assert last.kwargs["only_pending"] is False


@pytest.mark.asyncio
async def test_event_timeout_follows_timeout_edge(db, engine):
    db.get_timed_out_event_waits.return_value = [_enrollment(
        waiting_for_event="whatsapp_read", waiting_for_event_timeout=NOW - timedelta(minutes=5),
    )]

    result = await process_scheduled_journey_steps(NOW)

    assert result["timed_out"] == 1
    edge = engine["follow_edge"].await_args.args[3]
    assert edge.target == "nudge"
    enrollment = engine["follow_edge"].await_args.args[1]
    assert enrollment.waiting_for_event is None


@pytest.mark.asyncio
async def test_goal_recheck_completes_when_met(db, engine):
    db.get_goal_waiting_enrollments.return_value = [_enrollment(waiting_for_goal=True, goal_node_id="goal", current_node_id="goal")]
    engine["check_goal"].return_value = True

    result = await process_scheduled_journey_steps(NOW)

    assert result["goals_completed"] == 1
    assert engine["execute_node"].await_args.args[2] == "goal"
