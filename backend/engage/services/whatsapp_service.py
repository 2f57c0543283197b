# /engage/services/whatsapp_service.py

import httpx
import logging
import json
import tenacity
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from engage.config.settings import settings
from engage.models.common import new_id
from engage.services.cache_service import cache_service
from engage.services.security_service import PhoneNormalizer
from engage.utils.alerting import alerting_service
from engage.utils.circuit_breaker import RedisCircuitBreaker
from engage.utils.metrics import message_counter

logger = logging.getLogger(__name__)


class WhatsAppService:
    """Client for the WhatsApp Cloud API `/messages` endpoint."""

    def __init__(self, access_token: Optional[str], phone_id: Optional[str], base_url: str):
        self.access_token = access_token
        self.phone_id = phone_id
        self.base_url = base_url.rstrip("/")
        self.http_client = httpx.AsyncClient(timeout=15.0)
        self.circuit_breaker = RedisCircuitBreaker(cache_service.redis, "whatsapp")

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token and self.phone_id)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING)
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    @staticmethod
    def format_recipient(phone: str) -> str:
        """Graph API accepts digits only; country code included, no plus sign."""
        return PhoneNormalizer.digits_of(phone)

    async def send_whatsapp_request(self, payload: dict, metadata: dict | None = None) -> Optional[str]:
        """
        POST a message payload and log it. Returns the wamid, or None when the
        API rejected the message or the call failed.
        """
        to_phone = payload.get("to")
        if not to_phone:
            logger.error(f"send_whatsapp_request_invalid_phone: {to_phone}")
            return None
        if not self.is_configured:
            logger.error("send_whatsapp_request called without WhatsApp credentials")
            return None

        try:
            url = f"{self.base_url}/{self.phone_id}/messages"
            headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)
        except Exception as e:
            logger.error(f"whatsapp_send_error to {to_phone}: {e}", exc_info=True)
            message_counter.labels(status="error", message_type=payload.get("type", "unknown")).inc()
            await alerting_service.send_critical_alert("WhatsApp send message unexpected error", {"phone": to_phone, "error": str(e)})
            return None

        if response.status_code != 200:
            try:
                error_message = (response.json().get("error") or {}).get("message", "Unknown error")
            except ValueError:
                error_message = response.text[:200]
            logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
            message_counter.labels(status="failed", message_type=payload.get("type", "unknown")).inc()
            if response.status_code == 401:
                await alerting_service.send_critical_alert("WhatsApp authentication failed", {"error": "Invalid access token"})
            return None

        message_id = (response.json().get("messages") or [{}])[0].get("id")
        logger.info(f"WhatsApp message sent to {to_phone}, wamid: {message_id}")
        message_counter.labels(status="sent", message_type=payload.get("type", "unknown")).inc()

        metadata = metadata or {}
        content_payload = payload.get(payload.get("type"), {})
        from engage.services.db_service import db_service
        await db_service.log_message({
            "id": new_id("msg"),
            "store_id": metadata.get("store_id", settings.default_store_id),
            "conversation_id": metadata.get("conversation_id"),
            "wamid": message_id,
            "phone": to_phone,
            "direction": "outbound",
            "message_type": payload.get("type"),
            "content": content_payload.get("body") if payload.get("type") == "text" else json.dumps(content_payload),
            "status": "sent",
            "timestamp": datetime.now(timezone.utc),
            "metadata": metadata,
        })
        return message_id

    async def send_text_message(self, to_phone: str, message: str, metadata: dict | None = None) -> Optional[str]:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": self.format_recipient(to_phone),
            "type": "text",
            "text": {"preview_url": True, "body": message[:4096]},
        }
        return await self.send_whatsapp_request(payload, metadata)

    async def send_template_message(
        self,
        to: str,
        template_name: str,
        language: str = "en",
        components: Optional[List[Dict[str, Any]]] = None,
        body_params: Optional[List[str]] = None,
        metadata: dict | None = None
    ) -> Optional[str]:
        """
        Sends a pre-approved template. Pass either raw `components` from the
        journey builder or plain `body_params` for the common body-only case.
        """
        template: Dict[str, Any] = {"name": template_name, "language": {"code": language or "en"}}
        if components:
            template["components"] = components
        elif body_params:
            template["components"] = [{
                "type": "body",
                "parameters": [{"type": "text", "text": str(p)} for p in body_params]
            }]

        payload = {
            "messaging_product": "whatsapp",
            "to": self.format_recipient(to),
            "type": "template",
            "template": template,
        }
        return await self.send_whatsapp_request(payload, metadata)

    async def close(self):
        await self.http_client.aclose()


whatsapp_service = WhatsAppService(
    settings.whatsapp_access_token,
    settings.whatsapp_phone_id,
    settings.whatsapp_api_base_url
)
