# backend/tests/unit/test_services.py

import pytest
from unittest.mock import AsyncMock, MagicMock

from engage.services.cache_service import CacheService
from engage.services.db_service import db_service
from engage.services.shopify_service import ShopifyService
from engage.services.whatsapp_service import WhatsAppService
from engage.utils.errors import ShopifyAPIError


def _response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {}
    response.content = b"{}"
    response.text = ""
    return response


@pytest.fixture
def whatsapp(mocker):
    service = WhatsAppService("token", "1234567890", "https://graph.facebook.com/v19.0/")
    mocker.patch.object(service, "resilient_api_call", new_callable=AsyncMock)
    mocker.patch.object(db_service, "log_message", new_callable=AsyncMock)
    mocker.patch("engage.services.whatsapp_service.alerting_service.send_critical_alert", new_callable=AsyncMock)
    return service


@pytest.mark.asyncio
class TestWhatsAppService:

    async def test_send_text_message_logs_outbound(self, whatsapp):
        whatsapp.resilient_api_call.return_value = _response(body={"messages": [{"id": "wamid.abc"}]})

        wamid = await whatsapp.send_text_message("+91 98765 43210", "Hello", {"store_id": "store_test"})

        assert wamid == "wamid.abc"
        kwargs = whatsapp.resilient_api_call.await_args.kwargs
        assert whatsapp.resilient_api_call.await_args.args[1] == "https://graph.facebook.com/v19.0/1234567890/messages"
        assert kwargs["json"]["to"] == "919876543210"
        assert kwargs["json"]["text"]["body"] == "Hello"
        logged = db_service.log_message.await_args.args[0]
        assert logged["wamid"] == "wamid.abc"
        assert logged["direction"] == "outbound"
        assert logged["content"] == "Hello"
        assert logged["store_id"] == "store_test"

    async def test_template_body_params(self, whatsapp):
        whatsapp.resilient_api_call.return_value = _response(body={"messages": [{"id": "wamid.t"}]})

        await whatsapp.send_template_message("919876543210", "order_update", "en_US", body_params=["Asha", 42])

        template = whatsapp.resilient_api_call.await_args.kwargs["json"]["template"]
        assert template["language"] == {"code": "en_US"}
        assert template["components"][0]["parameters"][1] == {"type": "text", "text": "42"}

    async def test_rejected_message_returns_none(self, whatsapp):
        whatsapp.resilient_api_call.return_value = _response(400, {"error": {"message": "Invalid parameter"}})

        assert await whatsapp.send_text_message("919876543210", "Hello") is None
        db_service.log_message.assert_not_awaited()

    async def test_transport_error_returns_none(self, whatsapp):
        whatsapp.resilient_api_call.side_effect = RuntimeError("circuit open")

        assert await whatsapp.send_text_message("919876543210", "Hello") is None

    async def test_unconfigured_service_does_not_call_api(self, whatsapp):
        whatsapp.access_token = None

        assert await whatsapp.send_text_message("919876543210", "Hello") is None
        whatsapp.resilient_api_call.assert_not_awaited()


@pytest.fixture
def shopify(mocker):
    service = ShopifyService("https://test-store.myshopify.com/", "shpat_token", "2024-04")
    mocker.patch.object(service, "resilient_api_call", new_callable=AsyncMock)
    return service


@pytest.mark.asyncio
class TestShopifyService:

    async def test_add_customer_tags_merges_case_insensitively(self, shopify):
        shopify.resilient_api_call.side_effect = [
            _response(body={"customer": {"id": 42, "tags": "VIP, newsletter"}}),
            _response(body={"customer": {"id": 42}}),
        ]

        merged = await shopify.add_customer_tags("42", ["vip", "journey-winback"])

        assert merged == ["VIP", "newsletter", "journey-winback"]
        put_call = shopify.resilient_api_call.await_args_list[1]
        assert put_call.args[1] == "https://test-store.myshopify.com/admin/api/2024-04/customers/42.json"
        assert put_call.kwargs["json"] == {"customer": {"id": 42, "tags": "VIP, newsletter, journey-winback"}}

    async def test_no_update_when_tags_already_present(self, shopify):
        shopify.resilient_api_call.return_value = _response(body={"customer": {"id": 42, "tags": "vip"}})

        await shopify.add_customer_tags("42", ["VIP"])

        assert shopify.resilient_api_call.await_count == 1

    async def test_error_status_raises(self, shopify):
        shopify.resilient_api_call.return_value = _response(404)

        with pytest.raises(ShopifyAPIError):
            await shopify.get_customer("42")

    async def test_missing_token_raises(self, shopify):
        shopify.access_token = None

        with pytest.raises(ShopifyAPIError):
            await shopify.get_customer("42")


@pytest.mark.asyncio
class TestCampaignLogReceipts:

    @pytest.fixture
    def logs(self, mocker):
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value={"_id": "oid", "id": "clog_1", "status": "REPLIED"})
        database = MagicMock()
        database.campaign_logs = collection
        mocker.patch.object(db_service, "db", database)
        return collection

    async def test_status_guard_becomes_conditional_pipeline(self, logs):
        before = await db_service.update_campaign_log_by_message_id(
            "wamid.1", {"status": "READ", "read_at": "2024-06-01"}, ["CLICKED", "REPLIED", "CONVERTED"]
        )

        assert before == {"id": "clog_1", "status": "REPLIED"}
        query, update = logs.find_one_and_update.await_args.args
        assert query == {"message_id": "wamid.1"}
        stage = update[0]["$set"]
        assert stage["read_at"] == {"$literal": "2024-06-01"}
        assert stage["status"] == {"$cond": [{"$in": ["$status", ["CLICKED", "REPLIED", "CONVERTED"]]}, "$status", "READ"]}

    async def test_unguarded_receipt_is_plain_set(self, logs):
        await db_service.update_campaign_log_by_message_id("wamid.1", {"status": "FAILED", "error": "x"})

        assert logs.find_one_and_update.await_args.args[1] == {"$set": {"status": "FAILED", "error": "x"}}


@pytest.mark.asyncio
class TestDuplicateMessages:

    @pytest.fixture
    def cache(self, mocker):
        service = CacheService.__new__(CacheService)
        service.redis = MagicMock()
        service.redis.set = AsyncMock(side_effect=[True, None])
        return service

    async def test_second_sighting_is_duplicate(self, cache):
        assert await cache.is_duplicate_message("wamid.in", "919876543210") is False
        assert await cache.is_duplicate_message("wamid.in", "919876543210") is True
        cache.redis.set.assert_awaited_with("processed_message:919876543210:wamid.in", "1", ex=300, nx=True)

    async def test_redis_error_lets_message_through(self, cache):
        cache.redis.set = AsyncMock(side_effect=ConnectionError("redis down"))
        assert await cache.is_duplicate_message("wamid.in", "919876543210") is False
