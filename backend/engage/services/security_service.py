# /engage/services/security_service.py

import base64
import hmac
import hashlib
import bcrypt
import re
from typing import Optional

from engage.services.cache_service import cache_service

# Webhook signature checks, password hashing, phone normalization and
# login-attempt tracking.


class SecurityService:
    @staticmethod
    def verify_whatsapp_signature(payload: bytes, signature: str, secret: str) -> bool:
        """Meta signs the raw body with the app secret: `sha256=<hex digest>`."""
        if not signature or not signature.startswith("sha256="):
            return False
        expected_signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected_signature, signature[7:])

    @staticmethod
    def verify_shopify_hmac(payload: bytes, header_value: str, secret: str) -> bool:
        """Shopify sends the base64 HMAC-SHA256 of the raw body."""
        if not header_value or not secret:
            return False
        digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, header_value)

    @staticmethod
    def hash_password(password: str) -> str:
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    @staticmethod
    def verify_password(password: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            # Malformed or missing hash.
            return False


class PhoneNormalizer:
    @staticmethod
    def sanitize_phone_number(phone: Optional[str]) -> str:
        """
        Normalizes to an E.164-style `+<digits>` string. Returns "" for
        anything that does not carry 10 to 15 digits.
        """
        if not phone or not isinstance(phone, str):
            return ""

        clean_phone = re.sub(r"[^\d+]", "", phone.strip())
        if not clean_phone.startswith("+"):
            clean_phone = "+" + clean_phone.lstrip("+")

        if not re.match(r"^\+\d{10,15}$", clean_phone):
            return ""
        return clean_phone

    @staticmethod
    def digits_of(phone: Optional[str]) -> str:
        return re.sub(r"\D", "", phone) if phone else ""

    @staticmethod
    def last_ten_digits(phone: Optional[str]) -> str:
        digits = PhoneNormalizer.digits_of(phone)
        return digits[-10:] if len(digits) >= 10 else digits

    @staticmethod
    def to_whatsapp_recipient(phone: Optional[str]) -> Optional[str]:
        """
        Recipient format used for bulk campaign sends: spaces, dashes,
        plus signs and parentheses stripped. Numbers written with a national
        trunk prefix (leading 0) or shorter than 10 digits are rejected.
        """
        if not phone:
            return None
        stripped = re.sub(r"[\s\-+()]", "", phone)
        if not stripped.isdigit() or stripped.startswith("0") or len(stripped) < 10:
            return None
        return stripped


class RedisLoginAttemptTracker:
    def __init__(self, redis_client, max_attempts: int = 5, lockout_duration: int = 900):
        self.redis = redis_client
        self.lockout_duration = lockout_duration
        self.max_attempts = max_attempts

    async def is_locked_out(self, ip: str) -> bool:
        if not self.redis:
            return False
        attempts = await self.redis.get(f"login_attempts:{ip}")
        return bool(attempts) and int(attempts) >= self.max_attempts

    async def record_attempt(self, ip: str):
        if not self.redis:
            return
        key = f"login_attempts:{ip}"
        current = await self.redis.incr(key)
        if current == 1:
            await self.redis.expire(key, self.lockout_duration)


login_tracker = RedisLoginAttemptTracker(cache_service.redis)
