# backend/tests/integration/test_routes.py

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from engage.config.settings import settings
from engage.models.campaign import Campaign, CampaignStatus
from engage.models.journey import Journey, JourneyEnrollment, JourneyStatus
from engage.services.cache_service import cache_service
from engage.services.db_service import db_service
from engage.services.whatsapp_service import whatsapp_service

API_PREFIX = f"/api/{settings.api_version}"

TRIGGER = {"id": "t", "type": "trigger", "data": {"triggerType": "order_placed"}}
SEND = {"id": "s", "type": "action", "subtype": "send_whatsapp", "data": {"message": "Thanks {{first_name}}!"}}
JOURNEY_BODY = {"name": "Post purchase", "nodes": [TRIGGER, SEND], "edges": [{"id": "e1", "source": "t", "target": "s"}]}


@pytest.fixture
def db(mocker):
    """Every db_service call used by the routes, as AsyncMocks on the singleton."""
    names = [
        "create_journey", "list_journeys", "get_journey", "update_journey", "list_enrollments", "get_customer",
        "create_campaign", "list_campaigns", "get_campaign", "update_campaign", "enqueue_campaign",
        "list_follow_ups", "create_follow_up", "get_customers", "create_segment", "list_segments",
        "list_conversations", "get_conversation", "list_messages", "get_contact",
        "record_outbound_on_conversation", "create_auto_reply_rule",
    ]
    return {name: mocker.patch.object(db_service, name, new_callable=AsyncMock) for name in names}


def _stored_journey(status=JourneyStatus.ACTIVE):
    journey = Journey.model_validate({"store_id": "store_test", **JOURNEY_BODY, "status": status})
    return journey.model_dump()


class TestJourneyRoutes:

    def test_create_valid_journey(self, test_client, auth_headers, db):
        response = test_client.post(f"{API_PREFIX}/journeys/", json=JOURNEY_BODY, headers=auth_headers)

        assert response.status_code == 201
        stored = db["create_journey"].await_args.args[0]
        assert stored["store_id"] == "store_test"
        assert stored["status"] == JourneyStatus.DRAFT

    def test_create_invalid_journey_is_rejected(self, test_client, auth_headers, db):
        body = {"name": "No trigger", "nodes": [SEND], "edges": []}

        response = test_client.post(f"{API_PREFIX}/journeys/", json=body, headers=auth_headers)

        assert response.status_code == 422
        assert response.json()["detail"]["error_code"] == "MISSING_TRIGGER"
        db["create_journey"].assert_not_awaited()

    def test_activate_journey(self, test_client, auth_headers, db):
        db["get_journey"].return_value = _stored_journey(JourneyStatus.DRAFT)

        response = test_client.post(f"{API_PREFIX}/journeys/journey_1/status", json={"status": "active"}, headers=auth_headers)

        assert response.status_code == 200
        db["update_journey"].assert_awaited_once_with("journey_1", "store_test", {"status": "active"})

    def test_unknown_journey_is_404(self, test_client, auth_headers, db):
        db["get_journey"].return_value = None

        response = test_client.get(f"{API_PREFIX}/journeys/missing/enrollments", headers=auth_headers)
        assert response.status_code == 404

    def test_manual_enrollment(self, test_client, auth_headers, db, mocker):
        db["get_journey"].return_value = _stored_journey()
        db["get_customer"].return_value = {"id": "42", "first_name": "Asha", "phone": "919876543210"}
        mocker.patch("engage.routes.journeys.can_enter_journey", new_callable=AsyncMock, return_value=True)
        start = mocker.patch(
            "engage.routes.journeys.start_journey_execution",
            new_callable=AsyncMock,
            return_value=JourneyEnrollment(store_id="store_test", journey_id="journey_1", customer_id="42"),
        )

        response = test_client.post(f"{API_PREFIX}/journeys/journey_1/enroll", json={"customer_id": "42"}, headers=auth_headers)

        assert response.status_code == 201
        customer, event = start.await_args.args[1], start.await_args.args[2]
        assert customer["first_name"] == "Asha"
        assert event["type"] == "manual"

    def test_enrollment_into_paused_journey_conflicts(self, test_client, auth_headers, db):
        db["get_journey"].return_value = _stored_journey(JourneyStatus.PAUSED)

        response = test_client.post(f"{API_PREFIX}/journeys/journey_1/enroll", json={"customer_id": "42"}, headers=auth_headers)
        assert response.status_code == 409

    def test_engine_run_defaults_to_dry_run(self, test_client, auth_headers, mocker):
        run = mocker.patch("engage.routes.journeys.run_journey_engine", new_callable=AsyncMock, return_value={"journeys": 1, "enrolled": 0})

        response = test_client.post(f"{API_PREFIX}/journeys/run", headers=auth_headers)

        assert response.status_code == 200
        assert run.await_args.kwargs == {"include_test": False, "dry_run": True}


class TestCampaignRoutes:

    def _campaign(self, status=CampaignStatus.DRAFT):
        return Campaign(id="campaign_1", store_id="store_test", name="Diwali", message="Hi", status=status).model_dump()

    def test_schedule_draft_campaign(self, test_client, auth_headers, db):
        db["get_campaign"].return_value = self._campaign()
        when = (datetime.now(timezone.utc) + timedelta(hours=2)).isoformat()

        response = test_client.post(f"{API_PREFIX}/campaigns/campaign_1/schedule", json={"scheduled_at": when}, headers=auth_headers)

        assert response.status_code == 200
        queued = db["enqueue_campaign"].await_args.args[0]
        assert queued["campaign_id"] == "campaign_1"
        assert db["update_campaign"].await_args.args[1]["status"] == "SCHEDULED"

    def test_running_campaign_cannot_be_rescheduled(self, test_client, auth_headers, db):
        db["get_campaign"].return_value = self._campaign(CampaignStatus.RUNNING)

        response = test_client.post(f"{API_PREFIX}/campaigns/campaign_1/schedule", json={}, headers=auth_headers)

        assert response.status_code == 409
        db["enqueue_campaign"].assert_not_awaited()

    def test_duplicate_follow_up_step(self, test_client, auth_headers, db):
        db["get_campaign"].return_value = self._campaign()
        db["list_follow_ups"].return_value = [{"step_index": 1}]

        response = test_client.post(
            f"{API_PREFIX}/campaigns/campaign_1/follow-ups",
            json={"step_index": 1, "message": "Still interested?"},
            headers=auth_headers,
        )
        assert response.status_code == 409

    def test_cost_estimate(self, test_client, auth_headers, db):
        body = {"audience_size": 1000, "in_window_count": 200, "follow_ups": [{"condition": "NOT_READ"}]}

        response = test_client.post(f"{API_PREFIX}/campaigns/estimate", json=body, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["formatted_total"].startswith("₹")
        assert data["total_savings"] > 0

    def test_best_time_is_computed_and_cached(self, test_client, auth_headers, mocker):
        mocker.patch.object(cache_service, "get", new_callable=AsyncMock, return_value=None)
        cache_set = mocker.patch.object(cache_service, "set", new_callable=AsyncMock)
        mocker.patch(
            "engage.routes.campaigns.get_best_send_time",
            new_callable=AsyncMock,
            return_value={"hour": 19, "confidence": "medium", "samples": 8},
        )

        response = test_client.get(f"{API_PREFIX}/campaigns/best-time", headers=auth_headers)

        assert response.json()["data"]["hour"] == 19
        assert cache_set.await_args.args[0] == "best_send_time:store_test"

    def test_cached_best_time(self, test_client, auth_headers, mocker):
        mocker.patch.object(cache_service, "get", new_callable=AsyncMock, return_value='{"hour": 11, "confidence": "low", "samples": 0}')
        compute = mocker.patch("engage.routes.campaigns.get_best_send_time", new_callable=AsyncMock)

        response = test_client.get(f"{API_PREFIX}/campaigns/best-time", headers=auth_headers)

        assert response.json()["data"]["confidence"] == "low"
        compute.assert_not_awaited()


class TestSegmentRoutes:

    CUSTOMERS = [
        {"id": "1", "first_name": "Asha", "email": "asha@example.com", "orders_count": 4},
        {"id": "2", "first_name": "Ravi", "email": "ravi@example.com", "orders_count": 0},
    ]

    def test_preview(self, test_client, auth_headers, db):
        db["get_customers"].return_value = self.CUSTOMERS
        body = {"condition_groups": [{"conditions": [{"field": "total_orders", "operator": "greater_than", "value": 0}]}]}

        response = test_client.post(f"{API_PREFIX}/segments/preview", json=body, headers=auth_headers)

        data = response.json()["data"]
        assert data["count"] == 1
        assert data["total"] == 2
        assert data["sample"][0]["first_name"] == "Asha"

    def test_create_counts_customers(self, test_client, auth_headers, db):
        db["get_customers"].return_value = self.CUSTOMERS

        response = test_client.post(f"{API_PREFIX}/segments/", json={"name": "All"}, headers=auth_headers)

        assert response.status_code == 201
        stored = db["create_segment"].await_args.args[0]
        assert stored["customer_count"] == 2
        assert stored["needs_update"] is False


class TestConversationRoutes:

    def test_reply_outside_window_conflicts(self, test_client, auth_headers, db):
        db["get_conversation"].return_value = {"id": "conv_1", "phone": "919876543210"}
        db["get_contact"].return_value = {"last_message_at": datetime.now(timezone.utc) - timedelta(days=2)}

        response = test_client.post(f"{API_PREFIX}/conversations/conv_1/reply", json={"message": "Hi"}, headers=auth_headers)
        assert response.status_code == 409

    def test_reply_inside_window(self, test_client, auth_headers, db, mocker):
        db["get_conversation"].return_value = {"id": "conv_1", "phone": "919876543210"}
        db["get_contact"].return_value = {"last_message_at": datetime.now(timezone.utc) - timedelta(hours=1)}
        mocker.patch.object(whatsapp_service, "send_text_message", new_callable=AsyncMock, return_value="wamid.agent")

        response = test_client.post(f"{API_PREFIX}/conversations/conv_1/reply", json={"message": "Hi"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["data"]["message_id"] == "wamid.agent"
        db["record_outbound_on_conversation"].assert_awaited_once()

    def test_missing_conversation(self, test_client, auth_headers, db):
        db["get_conversation"].return_value = None

        response = test_client.get(f"{API_PREFIX}/conversations/conv_x/messages", headers=auth_headers)
        assert response.status_code == 404
