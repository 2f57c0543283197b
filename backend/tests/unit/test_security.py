# backend/tests/unit/test_security.py

import base64
import hashlib
import hmac
import pytest
from unittest.mock import AsyncMock

from engage.services.security_service import PhoneNormalizer, RedisLoginAttemptTracker, SecurityService


class TestWebhookSignatures:

    def test_whatsapp_signature_valid(self):
        body = b'{"entry": []}'
        digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
        assert SecurityService.verify_whatsapp_signature(body, f"sha256={digest}", "app-secret")

    def test_whatsapp_signature_rejects_tampering(self):
        body = b'{"entry": []}'
        digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
        assert not SecurityService.verify_whatsapp_signature(b'{"entry": [1]}', f"sha256={digest}", "app-secret")
        assert not SecurityService.verify_whatsapp_signature(body, digest, "app-secret")
        assert not SecurityService.verify_whatsapp_signature(body, "", "app-secret")

    def test_shopify_hmac(self):
        body = b'{"id": 1}'
        header = base64.b64encode(hmac.new(b"shop-secret", body, hashlib.sha256).digest()).decode()
        assert SecurityService.verify_shopify_hmac(body, header, "shop-secret")
        assert not SecurityService.verify_shopify_hmac(body, header, "other-secret")
        assert not SecurityService.verify_shopify_hmac(body, header, "")
        assert not SecurityService.verify_shopify_hmac(body, None, "shop-secret")


class TestPasswords:

    def test_hash_and_verify(self):
        hashed = SecurityService.hash_password("s3cret-pass")
        assert hashed != "s3cret-pass"
        assert SecurityService.verify_password("s3cret-pass", hashed)
        assert not SecurityService.verify_password("wrong", hashed)

    def test_malformed_hash_does_not_raise(self):
        assert not SecurityService.verify_password("anything", "not-a-bcrypt-hash")


class TestPhoneNormalizer:

    def test_sanitize_phone_number(self):
        assert PhoneNormalizer.sanitize_phone_number("+91 98765-43210") == "+919876543210"
        assert PhoneNormalizer.sanitize_phone_number("(555) 867-5309") == "+5558675309"
        assert PhoneNormalizer.sanitize_phone_number("123") == ""
        assert PhoneNormalizer.sanitize_phone_number(None) == ""
        assert PhoneNormalizer.sanitize_phone_number("not a number") == ""

    def test_last_ten_digits(self):
        assert PhoneNormalizer.last_ten_digits("+91 98765 43210") == "9876543210"
        assert PhoneNormalizer.last_ten_digits("12345") == "12345"
        assert PhoneNormalizer.last_ten_digits(None) == ""

    def test_whatsapp_recipient(self):
        assert PhoneNormalizer.to_whatsapp_recipient("+91 (987) 654-3210") == "919876543210"
        assert PhoneNormalizer.to_whatsapp_recipient("09876543210") is None
        assert PhoneNormalizer.to_whatsapp_recipient("98765") is None
        assert PhoneNormalizer.to_whatsapp_recipient("98765abcde") is None
        assert PhoneNormalizer.to_whatsapp_recipient(None) is None


@pytest.mark.asyncio
class TestLoginAttemptTracker:

    async def test_locks_out_after_max_attempts(self):
        redis = AsyncMock()
        redis.get.return_value = b"5"
        tracker = RedisLoginAttemptTracker(redis, max_attempts=5)
        assert await tracker.is_locked_out("10.0.0.1")

    async def test_first_attempt_sets_expiry(self):
        redis = AsyncMock()
        redis.incr.return_value = 1
        tracker = RedisLoginAttemptTracker(redis, lockout_duration=900)
        await tracker.record_attempt("10.0.0.1")
        redis.expire.assert_awaited_once_with("login_attempts:10.0.0.1", 900)

    async def test_without_redis_nothing_is_locked(self):
        tracker = RedisLoginAttemptTracker(None)
        assert not await tracker.is_locked_out("10.0.0.1")
        await tracker.record_attempt("10.0.0.1")
