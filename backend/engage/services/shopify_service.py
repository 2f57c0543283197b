# /engage/services/shopify_service.py

import httpx
import logging
import tenacity
from typing import Any, Dict, List, Optional

from engage.config.settings import settings
from engage.services.cache_service import cache_service
from engage.utils.circuit_breaker import RedisCircuitBreaker
from engage.utils.errors import ShopifyAPIError

logger = logging.getLogger(__name__)


class ShopifyService:
    """Admin REST API calls made by journey actions and customer sync."""

    def __init__(self, store_url: str, access_token: Optional[str], api_version: str):
        self.store_url = store_url.replace('https://', '').replace('http://', '').rstrip('/')
        self.access_token = access_token
        self.api_version = api_version
        self.circuit_breaker = RedisCircuitBreaker(cache_service.redis, "shopify")
        self.http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, read=30.0, connect=5.0)
        )

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING)
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    def _url(self, path: str) -> str:
        return f"https://{self.store_url}/admin/api/{self.api_version}/{path}"

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            raise ShopifyAPIError("Shopify access token is not configured")
        return {"X-Shopify-Access-Token": self.access_token, "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        func = getattr(self.http_client, method)
        resp = await self.resilient_api_call(func, self._url(path), headers=self._headers(), **kwargs)
        if resp.status_code >= 400:
            raise ShopifyAPIError(f"Shopify {method.upper()} {path} failed: {resp.status_code} {resp.text[:200]}")
        return resp.json() if resp.content else {}

    # --- Customers ---

    async def get_customer(self, customer_id: str) -> Dict[str, Any]:
        data = await self._request("get", f"customers/{customer_id}.json")
        return data.get("customer", {})

    async def add_customer_tags(self, customer_id: str, tags: List[str]) -> List[str]:
        """Merge `tags` into the customer's comma-separated tag string. Returns the merged list."""
        customer = await self.get_customer(customer_id)
        existing = [t.strip() for t in (customer.get("tags") or "").split(",") if t.strip()]
        merged = list(existing)
        for tag in tags:
            if tag and tag.lower() not in {t.lower() for t in merged}:
                merged.append(tag)

        if merged != existing:
            await self._request(
                "put",
                f"customers/{customer_id}.json",
                json={"customer": {"id": int(customer_id), "tags": ", ".join(merged)}}
            )
            logger.info(f"Shopify customer {customer_id} tagged: {tags}")
        return merged

    async def set_customer_metafield(
        self,
        customer_id: str,
        namespace: str,
        key: str,
        value: Any,
        value_type: str = "single_line_text_field"
    ) -> Dict[str, Any]:
        payload = {"metafield": {"namespace": namespace, "key": key, "value": str(value), "type": value_type}}
        data = await self._request("post", f"customers/{customer_id}/metafields.json", json=payload)
        return data.get("metafield", {})

    async def close(self):
        await self.http_client.aclose()


shopify_service = ShopifyService(
    settings.shopify_store_url,
    settings.shopify_access_token,
    settings.shopify_api_version
)
