# backend/tests/unit/test_journey_engine.py

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from engage.journeys.engine import get_trigger_subtype, matches_today, run_journey_engine
from engage.models.journey import JourneyNode

NOW = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


def _journey_doc(trigger_data, **overrides):
    data = {
        "id": "j1", "store_id": "store_test", "name": "Batch", "status": "active",
        "nodes": [
            {"id": "t", "type": "trigger", "data": trigger_data},
            {"id": "send", "type": "action", "subtype": "send_whatsapp", "data": {"message": "Hi"}},
        ],
        "edges": [{"id": "e", "source": "t", "target": "send"}],
    }
    data.update(overrides)
    return data


@pytest.fixture
def db(mocker):
    mock = mocker.patch("engage.journeys.engine.db_service", new_callable=AsyncMock)
    mocker.patch("engage.journeys.engine.can_enter_journey", new_callable=AsyncMock, return_value=True)
    mocker.patch("engage.journeys.engine.process_scheduled_journey_steps", new_callable=AsyncMock)
    return mock


def test_trigger_subtype_mapping():
    assert get_trigger_subtype(JourneyNode(id="t", type="trigger", data={"triggerType": "segment"})) == "segment_joined"
    assert get_trigger_subtype(JourneyNode(id="t", type="trigger", data={"type": "birthday"})) == "date_time"
    assert get_trigger_subtype(JourneyNode(id="t", type="trigger", data={"triggerType": "order_placed"})) == "event_trigger"
    assert get_trigger_subtype(JourneyNode(id="t", type="trigger")) == "manual_entry"


def test_matches_today_birthday_and_anniversary():
    assert matches_today({"birthday": "1990-06-01"}, "birthday", NOW)
    assert matches_today({"metafields": [{"key": "birthday", "value": "1985-06-01T00:00:00Z"}]}, "birthday", NOW)
    assert not matches_today({"birthday": "1990-06-02"}, "birthday", NOW)
    assert matches_today({"created_at": "2021-06-01T08:00:00Z"}, "created_at", NOW)
    # Signing up today is not an anniversary.
    assert not matches_today({"created_at": "2024-06-01T08:00:00Z"}, "created_at", NOW)


@pytest.mark.asyncio
async def test_abandoned_cart_journey_enrolls_checkout_customers(db, mocker):
    start = mocker.patch("engage.journeys.engine.start_journey_execution", new_callable=AsyncMock)
    db.get_active_journeys.return_value = [_journey_doc({"triggerType": "abandoned_cart", "hours": 2})]
    db.get_abandoned_checkouts.return_value = [
        {"id": "chk1", "phone": "+919800000000", "customer": {"id": 11, "first_name": "Meera"}},
        {"id": "chk2", "customer": None},
    ]

    result = await run_journey_engine("store_test", NOW)

    assert db.get_abandoned_checkouts.await_args.args == ("store_test", NOW - timedelta(hours=2))
    assert result["journeys"] == 1
    assert result["candidates"] == 1
    assert result["enrolled"] == 1
    customer = start.await_args.args[1]
    assert customer["id"] == "11"
    assert customer["phone"] == "+919800000000"


@pytest.mark.asyncio
async def test_dry_run_enrolls_nobody(db, mocker):
    start = mocker.patch("engage.journeys.engine.start_journey_execution", new_callable=AsyncMock)
    steps = mocker.patch("engage.journeys.engine.process_scheduled_journey_steps", new_callable=AsyncMock)
    db.get_active_journeys.return_value = [_journey_doc({"type": "birthday"})]
    db.get_customers.return_value = [{"id": "1", "birthday": "1990-06-01"}, {"id": "2", "birthday": "1990-07-01"}]

    result = await run_journey_engine("store_test", NOW, dry_run=True)

    assert result["candidates"] == 1
    assert result["enrolled"] == 0
    start.assert_not_awaited()
    steps.assert_not_awaited()


@pytest.mark.asyncio
async def test_missing_segment_is_reported(db, mocker):
    mocker.patch("engage.journeys.engine.start_journey_execution", new_callable=AsyncMock)
    db.get_active_journeys.return_value = [_journey_doc({"triggerType": "segment", "segmentId": "seg_gone"})]
    db.get_segment.return_value = None

    result = await run_journey_engine("store_test", NOW)

    assert result["journeys"] == 1
    assert len(result["errors"]) == 1
    assert "seg_gone" in result["errors"][0]


@pytest.mark.asyncio
async def test_test_journeys_skipped_unless_included(db, mocker):
    start = mocker.patch("engage.journeys.engine.start_journey_execution", new_callable=AsyncMock)
    db.get_active_journeys.return_value = [
        _journey_doc({"type": "birthday"}, test_mode=True, test_phones=["+91 98765 43210"]),
    ]
    db.get_customers.return_value = [
        {"id": "1", "birthday": "1990-06-01", "phone": "9876543210"},
        {"id": "2", "birthday": "1990-06-01", "phone": "9123456789"},
    ]

    assert (await run_journey_engine("store_test", NOW))["journeys"] == 0

    result = await run_journey_engine("store_test", NOW, include_test=True)
    assert result["enrolled"] == 1
    assert result["skipped"] == 1
    assert start.await_args.args[1]["id"] == "1"


@pytest.mark.asyncio
async def test_webhook_triggered_journeys_are_left_alone(db, mocker):
    start = mocker.patch("engage.journeys.engine.start_journey_execution", new_callable=AsyncMock)
    db.get_active_journeys.return_value = [_journey_doc({"triggerType": "order_placed"})]

    result = await run_journey_engine("store_test", NOW)

    assert result["journeys"] == 0
    start.assert_not_awaited()
