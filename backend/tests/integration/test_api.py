# backend/tests/integration/test_api.py
import base64
import hmac
import hashlib
import json
from unittest.mock import AsyncMock

from engage.config.settings import settings
from engage.services.db_service import db_service
from engage.services.security_service import SecurityService, login_tracker

API_PREFIX = f"/api/{settings.api_version}"


def _whatsapp_signature(body: bytes) -> str:
    return "sha256=" + hmac.new(settings.whatsapp_app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _shopify_hmac(body: bytes) -> str:
    return base64.b64encode(hmac.new(settings.shopify_webhook_secret.encode("utf-8"), body, hashlib.sha256).digest()).decode()


def test_health(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_webhook_verification_success(test_client):
    params = {
        "hub.mode": "subscribe", "hub.challenge": "12345",
        "hub.verify_token": settings.whatsapp_verify_token
    }
    response = test_client.get(f"{API_PREFIX}/webhooks/whatsapp", params=params)
    assert response.status_code == 200
    assert response.text == "12345"


def test_webhook_verification_failure(test_client):
    params = {
        "hub.mode": "subscribe", "hub.challenge": "12345",
        "hub.verify_token": "wrong_token"
    }
    response = test_client.get(f"{API_PREFIX}/webhooks/whatsapp", params=params)
    assert response.status_code == 403


def test_handle_whatsapp_webhook_success(test_client, mocker):
    mock_process = mocker.patch("engage.routes.webhooks.process_whatsapp_payload", new_callable=AsyncMock)

    payload = {"entry": [{"changes": [{"field": "messages", "value": {"messages": [{"from": "15551234567", "id": "wamid.ID", "text": {"body": "Hello"}, "type": "text"}]}}]}]}
    payload_bytes = json.dumps(payload).encode("utf-8")
    headers = {"X-Hub-Signature-256": _whatsapp_signature(payload_bytes), "Content-Type": "application/json"}

    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"status": "success"}
    mock_process.assert_awaited_once_with(payload)


def test_handle_whatsapp_webhook_invalid_signature(test_client, mocker):
    mock_process = mocker.patch("engage.routes.webhooks.process_whatsapp_payload", new_callable=AsyncMock)
    payload_bytes = json.dumps({"entry": []}).encode("utf-8")
    headers = {"X-Hub-Signature-256": "sha256=invalid", "Content-Type": "application/json"}

    response = test_client.post(f"{API_PREFIX}/webhooks/whatsapp", content=payload_bytes, headers=headers)

    assert response.status_code == 403
    mock_process.assert_not_awaited()


def test_handle_whatsapp_webhook_bad_json(test_client, mocker):
    mocker.patch("engage.routes.webhooks.process_whatsapp_payload", new_callable=AsyncMock)
    payload_bytes = b"not json"

    response = test_client.post(
        f"{API_PREFIX}/webhooks/whatsapp",
        content=payload_bytes,
        headers={"X-Hub-Signature-256": _whatsapp_signature(payload_bytes)}
    )
    assert response.status_code == 400


def test_shopify_webhook_accepted(test_client, mocker):
    mocker.patch.object(db_service, "get_store_id_for_shop", new_callable=AsyncMock, return_value="store_test")
    mock_process = mocker.patch("engage.routes.webhooks.process_shopify_webhook", new_callable=AsyncMock)
    order = {"id": 1001, "email": "asha@example.com"}
    body = json.dumps(order).encode("utf-8")
    headers = {
        "X-Shopify-Hmac-Sha256": _shopify_hmac(body),
        "X-Shopify-Topic": "orders/create",
        "X-Shopify-Shop-Domain": "test-store.myshopify.com",
    }

    response = test_client.post(f"{API_PREFIX}/webhooks/shopify", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "topic": "orders/create"}
    mock_process.assert_awaited_once_with("store_test", "orders/create", order)


def test_shopify_webhook_store_lookup_failure_uses_default(test_client, mocker):
    mocker.patch.object(db_service, "get_store_id_for_shop", new_callable=AsyncMock, side_effect=RuntimeError("db down"))
    mock_process = mocker.patch("engage.routes.webhooks.process_shopify_webhook", new_callable=AsyncMock)
    body = b'{"id": 42}'
    headers = {"X-Shopify-Hmac-Sha256": _shopify_hmac(body), "X-Shopify-Topic": "customers/update"}

    response = test_client.post(f"{API_PREFIX}/webhooks/shopify", content=body, headers=headers)

    assert response.status_code == 200
    assert mock_process.await_args.args[0] == settings.default_store_id


def test_shopify_webhook_unsupported_topic_is_ignored(test_client, mocker):
    mock_process = mocker.patch("engage.routes.webhooks.process_shopify_webhook", new_callable=AsyncMock)
    body = b'{"id": 1}'
    headers = {"X-Shopify-Hmac-Sha256": _shopify_hmac(body), "X-Shopify-Topic": "products/update"}

    response = test_client.post(f"{API_PREFIX}/webhooks/shopify", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["ignored"] is True
    mock_process.assert_not_awaited()


def test_shopify_webhook_invalid_hmac(test_client, mocker):
    mock_process = mocker.patch("engage.routes.webhooks.process_shopify_webhook", new_callable=AsyncMock)
    headers = {"X-Shopify-Hmac-Sha256": "bogus", "X-Shopify-Topic": "orders/create"}

    response = test_client.post(f"{API_PREFIX}/webhooks/shopify", content=b'{"id": 1}', headers=headers)

    assert response.status_code == 401
    mock_process.assert_not_awaited()


def test_login_and_me(test_client, mocker):
    mocker.patch.object(settings, "admin_password", SecurityService.hash_password("correct-horse"))
    mocker.patch.object(login_tracker, "is_locked_out", new_callable=AsyncMock, return_value=False)
    mocker.patch.object(login_tracker, "record_attempt", new_callable=AsyncMock)

    response = test_client.post(f"{API_PREFIX}/auth/login", json={"password": "correct-horse", "store_id": "store_42"})
    assert response.status_code == 200
    token = response.json()["access_token"]

    me = test_client.get(f"{API_PREFIX}/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["user"] == {"username": "admin", "store_id": "store_42"}


def test_login_wrong_password(test_client, mocker):
    mocker.patch.object(settings, "admin_password", SecurityService.hash_password("correct-horse"))
    mocker.patch.object(login_tracker, "is_locked_out", new_callable=AsyncMock, return_value=False)
    record = mocker.patch.object(login_tracker, "record_attempt", new_callable=AsyncMock)

    response = test_client.post(f"{API_PREFIX}/auth/login", json={"password": "wrong-horse"})

    assert response.status_code == 401
    record.assert_awaited_once()


def test_login_locked_out(test_client, mocker):
    mocker.patch.object(login_tracker, "is_locked_out", new_callable=AsyncMock, return_value=True)

    response = test_client.post(f"{API_PREFIX}/auth/login", json={"password": "whatever-pass"})
    assert response.status_code == 429


def test_journeys_unauthorized(test_client):
    response = test_client.get(f"{API_PREFIX}/journeys/")
    assert response.status_code == 401
