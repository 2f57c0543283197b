# /engage/utils/dependencies.py

import secrets
import structlog
from fastapi import Request, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from engage.config.settings import settings
from engage.services.jwt_service import jwt_service
from engage.services.security_service import SecurityService
from engage.services.db_service import db_service
from engage.utils.metrics import webhook_signature_counter
from engage.utils.request_utils import get_remote_address

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"/api/{settings.api_version}/auth/login")
log = structlog.get_logger(__name__)


async def verify_jwt_token(token: str = Depends(oauth2_scheme)) -> dict:
    payload = jwt_service.verify_token(token)
    if payload.get("type") != "access":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return payload


async def verify_webhook_signature(request: Request) -> bytes:
    """WhatsApp Cloud API callbacks; a bad signature is answered with 403."""
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256", "")
    if not SecurityService.verify_whatsapp_signature(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(source="whatsapp", status="invalid").inc()
        await db_service.log_security_event("invalid_webhook_signature", get_remote_address(request), {"signature": signature[:50]})
        log.error("Invalid WhatsApp webhook signature.", signature=signature[:50])
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")
    webhook_signature_counter.labels(source="whatsapp", status="valid").inc()
    return body


async def verify_shopify_signature(request: Request) -> bytes:
    """Shopify webhooks; a missing or wrong HMAC is answered with 401."""
    if not settings.shopify_webhook_secret:
        raise HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail="Shopify webhook processing is not configured.")

    body = await request.body()
    header_val = request.headers.get("X-Shopify-Hmac-Sha256", "")
    if not SecurityService.verify_shopify_hmac(body, header_val, settings.shopify_webhook_secret):
        webhook_signature_counter.labels(source="shopify", status="invalid").inc()
        await db_service.log_security_event(
            "invalid_shopify_signature",
            get_remote_address(request),
            {"header_prefix": header_val[:20], "topic": request.headers.get("X-Shopify-Topic")}
        )
        log.warning("Invalid Shopify webhook signature.", topic=request.headers.get("X-Shopify-Topic"))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Shopify signature")
    webhook_signature_counter.labels(source="shopify", status="valid").inc()
    return body


async def verify_metrics_access(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or missing API key")
