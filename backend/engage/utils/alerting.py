# /engage/utils/alerting.py

import httpx
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from engage.config.settings import settings

# Posts critical failures (expired WhatsApp tokens, dead batch workers) to an
# external webhook such as a Slack or Discord incoming hook.

logger = logging.getLogger(__name__)


class AlertingService:
    def __init__(self, webhook_url: Optional[str]):
        self.webhook_url = webhook_url
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None

    async def send_critical_alert(self, error: str, context: Dict[str, Any]):
        if not self.client:
            logger.warning(f"Critical alert (no webhook configured): {error} {context}")
            return
        alert_data = {
            "severity": "critical",
            "service": "engage-backend",
            "error": error,
            "context": context,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.environment,
        }
        try:
            await self.client.post(self.webhook_url, json=alert_data)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send critical alert: {e}")

    async def cleanup(self):
        if self.client:
            await self.client.aclose()


alerting_service = AlertingService(settings.alerting_webhook_url)
