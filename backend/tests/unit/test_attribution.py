# backend/tests/unit/test_attribution.py

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from engage.campaigns.attribution import attribute_order
from engage.models.campaign import ENGAGEABLE_LOG_STATUSES

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_order_is_credited_to_latest_campaign_touch(mocker):
    db = mocker.patch("engage.campaigns.attribution.db_service", new_callable=AsyncMock)
    db.find_attribution_candidate.return_value = {"id": "clog_1", "campaign_id": "campaign_1"}
    order = {"id": 1001, "total_price": "1499.00", "customer": {"id": 7, "email": "asha@example.com", "phone": "+91 98765-43210"}}

    assert await attribute_order("store_test", order, NOW) == "clog_1"

    args = db.find_attribution_candidate.await_args.args
    assert args == ("store_test", ENGAGEABLE_LOG_STATUSES, NOW - timedelta(hours=72), "asha@example.com", "9876543210", "7")
    fields = db.update_campaign_log.await_args.args[1]
    assert fields["status"] == "CONVERTED"
    assert fields["order_id"] == "1001"
    assert fields["order_amount"] == 1499.0
    db.increment_campaign.assert_awaited_once_with("campaign_1", {"total_converted": 1, "total_revenue": 1499.0})


@pytest.mark.asyncio
async def test_no_candidate_means_no_attribution(mocker):
    db = mocker.patch("engage.campaigns.attribution.db_service", new_callable=AsyncMock)
    db.find_attribution_candidate.return_value = None

    assert await attribute_order("store_test", {"id": 5, "email": "x@example.com"}, NOW) is None
    db.update_campaign_log.assert_not_awaited()
