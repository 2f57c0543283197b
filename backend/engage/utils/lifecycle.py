# /engage/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from engage.config.settings import settings
from engage.services.cache_service import cache_service
from engage.services.db_service import db_service
from engage.services.shopify_service import shopify_service
from engage.services.whatsapp_service import whatsapp_service
from engage.utils.alerting import alerting_service
from engage.utils.logging import setup_logging

# Startup and shutdown for the API process. Background jobs run in the
# separate scheduler process, not here.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info(f"Application starting up ({settings.environment})...")

    await db_service.create_indexes()
    if not whatsapp_service.is_configured:
        logger.warning("WhatsApp credentials are not set; journey and campaign sends will fail until configured.")

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    await whatsapp_service.close()
    await shopify_service.close()
    await alerting_service.cleanup()
    await cache_service.close()
    if db_service.client:
        db_service.client.close()
