# backend/tests/unit/test_event_router.py

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from engage.journeys.event_router import (
    exit_path, phone_variants, route_button_click, route_delivery_status, route_reply,
)
from engage.models.journey import Journey, JourneyNode

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _journey(wait_data=None) -> Journey:
    return Journey.model_validate({
        "id": "j1", "store_id": "store_test", "name": "Router", "status": "active",
        "nodes": [
            {"id": "send", "type": "action", "subtype": "send_whatsapp", "data": {"message": "Pick one"}},
            {"id": "wait", "type": "delay", "data": wait_data or {"eventType": "whatsapp_read"}},
            {"id": "yes", "type": "exit", "data": {}},
            {"id": "no", "type": "exit", "data": {}},
        ],
        "edges": [
            {"id": "e1", "source": "send", "target": "wait"},
            {"id": "e2", "source": "wait", "target": "yes", "label": "Yes please"},
            {"id": "e3", "source": "wait", "target": "no", "label": "No thanks"},
        ],
    })


def _enrollment(**overrides):
    data = {
        "id": "enroll_1", "store_id": "store_test", "journey_id": "j1", "customer_id": "c1",
        "phone": "+91 98765 43210", "status": "waiting", "current_node_id": "wait",
        "waiting_for_event": "whatsapp_read",
    }
    data.update(overrides)
    return data


@pytest.fixture
def router(mocker):
    db = mocker.patch("engage.journeys.event_router.db_service", new_callable=AsyncMock)
    mocks = {
        "db": db,
        "load_journey": mocker.patch("engage.journeys.event_router.load_journey", new_callable=AsyncMock, return_value=_journey()),
        "log_activity": mocker.patch("engage.journeys.event_router.log_activity", new_callable=AsyncMock),
        "follow_edge": mocker.patch("engage.journeys.event_router.follow_edge", new_callable=AsyncMock),
        "move_to_next_node": mocker.patch("engage.journeys.event_router.move_to_next_node", new_callable=AsyncMock),
        "exit_journey": mocker.patch("engage.journeys.event_router.exit_journey", new_callable=AsyncMock),
    }
    return mocks


def test_phone_variants_cover_stored_formats():
    variants = phone_variants("919876543210")
    assert "+919876543210" in variants
    assert "9876543210" in variants
    assert "919876543210" in variants


def test_exit_path_shapes():
    node = JourneyNode(id="w", type="delay", data={"exitPaths": {"read": "exit", "failed": {"label": "Retry"}}})
    assert exit_path(node, "read") == {"action": "exit"}
    assert exit_path(node, "failed") == {"label": "Retry", "action": "branch"}
    assert exit_path(node, "delivered") == {}


@pytest.mark.asyncio
class TestDeliveryStatus:

    async def test_unknown_message_is_ignored(self, router):
        router["db"].find_enrollment_by_message_id.return_value = None
        assert await route_delivery_status("store_test", "wamid.x", "read", NOW) is None

    async def test_other_store_is_ignored(self, router):
        router["db"].find_enrollment_by_message_id.return_value = _enrollment(store_id="another")
        assert await route_delivery_status("store_test", "wamid.x", "read", NOW) is None

    async def test_awaited_status_advances(self, router):
        router["db"].find_enrollment_by_message_id.return_value = _enrollment()
        assert await route_delivery_status("store_test", "wamid.x", "read", NOW) == "advanced"
        router["move_to_next_node"].assert_awaited_once()
        assert router["log_activity"].await_args.args[2] == "message_read"

    async def test_other_status_keeps_waiting(self, router):
        router["db"].find_enrollment_by_message_id.return_value = _enrollment()
        assert await route_delivery_status("store_test", "wamid.x", "delivered", NOW) == "waiting"
        router["move_to_next_node"].assert_not_awaited()

    async def test_failed_without_path_exits(self, router):
        router["db"].find_enrollment_by_message_id.return_value = _enrollment()
        assert await route_delivery_status("store_test", "wamid.x", "failed", NOW) == "exited"
        assert router["exit_journey"].await_args.args[1] == "message_failed"

    async def test_configured_path_wins(self, router):
        router["load_journey"].return_value = _journey({"eventType": "whatsapp_read", "exitPaths": {"delivered": {"action": "branch", "label": "No thanks"}}})
        router["db"].find_enrollment_by_message_id.return_value = _enrollment()
        assert await route_delivery_status("store_test", "wamid.x", "delivered", NOW) == "advanced"
        assert router["follow_edge"].await_args.args[3].target == "no"

    async def test_not_waiting_only_logs(self, router):
        router["db"].find_enrollment_by_message_id.return_value = _enrollment(status="active", waiting_for_event=None)
        assert await route_delivery_status("store_test", "wamid.x", "read", NOW) == "logged"


@pytest.mark.asyncio
async def test_reply_resumes_waiting_enrollments(router):
    router["db"].find_enrollments_waiting_for_event.return_value = [_enrollment(waiting_for_event="whatsapp_replied")]

    routed = await route_reply("store_test", "919876543210", "Yes", NOW)

    assert routed == 1
    enrollment = router["move_to_next_node"].await_args.args[1]
    assert enrollment.context.variables["last_reply"] == "Yes"
    assert enrollment.waiting_for_event is None


@pytest.mark.asyncio
async def test_button_click_follows_edge_with_button_text(router):
    router["load_journey"].return_value = _journey()
    router["db"].find_enrollment_by_message_id.return_value = _enrollment(current_node_id="wait", waiting_for_event="whatsapp_replied")

    outcome = await route_button_click("store_test", "wamid.ctx", "BTN_NO", "No thanks", NOW)

    assert outcome == "advanced"
    router["db"].cancel_scheduled_executions.assert_awaited_once()
    assert router["follow_edge"].await_args.args[3].target == "no"


@pytest.mark.asyncio
async def test_button_paths_can_exit(router):
    router["load_journey"].return_value = _journey({"buttonPaths": {"STOP": {"action": "exit"}}})
    router["db"].find_enrollment_by_message_id.return_value = _enrollment()

    assert await route_button_click("store_test", "wamid.ctx", "STOP", "Stop", NOW) == "exited"
    assert router["exit_journey"].await_args.args[1] == "button_exit"


@pytest.mark.asyncio
async def test_late_click_without_edge_is_only_logged(router):
    router["db"].find_enrollment_by_message_id.return_value = _enrollment(status="active", waiting_for_event=None)

    assert await route_button_click("store_test", "wamid.ctx", "BTN_X", "Unknown", NOW) == "logged"
    router["move_to_next_node"].assert_not_awaited()
