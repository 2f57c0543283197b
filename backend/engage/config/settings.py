# /engage/config/settings.py

import sys
import re
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/engage"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # WhatsApp Cloud API
    whatsapp_access_token: str | None = None
    whatsapp_phone_id: str | None = None
    whatsapp_verify_token: str
    whatsapp_app_secret: str
    whatsapp_business_account_id: str | None = None
    whatsapp_api_base_url: str = "https://graph.facebook.com/v18.0"

    # Shopify
    shopify_store_url: str = "example.myshopify.com"
    shopify_access_token: str | None = None
    shopify_webhook_secret: str | None = None
    shopify_api_version: str = "2025-07"

    # Tenancy
    default_store_id: str = "default"

    # Security
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_hours: int = 24
    admin_password: str  # bcrypt hash
    api_key: str | None = None

    # Deployment
    workers: int = 4
    environment: str = Field(default="production")
    scheduler_timezone: str = "Asia/Kolkata"

    # Redis
    redis_url: str = "redis://localhost:6379"

    cors_allowed_origins: List[str] = Field(default=["http://localhost:3000"])
    allowed_hosts: str = "localhost,127.0.0.1,testserver"

    # Observability
    alerting_webhook_url: str | None = None

    # App Metadata & Limits
    api_version: str = "v1"
    rate_limit_per_minute: int = 100
    auth_rate_limit_per_minute: int = 5

    # Campaign engine
    campaign_retry_limit: int = 3
    campaign_batch_delay_ms: int = 60000
    follow_up_batch_limit: int = 100
    attribution_window_hours: int = 72
    webhook_log_limit: int = 200

    # Journey engine
    journey_retry_max_attempts: int = 3
    journey_retry_base_ms: int = 60000
    scheduled_step_batch_size: int = 200
    abandoned_cart_default_hours: int = 24

    # ---------------- Validators ---------------- #

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def parse_cors_allowed_origins(cls, v):
        """Accept either a comma-separated string or a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("jwt_secret_key")
    @classmethod
    def key_length_must_be_sufficient(cls, v):
        if len(v) < 32:
            raise ValueError("JWT secret key must be at least 32 characters long")
        return v

    @field_validator("whatsapp_phone_id")
    @classmethod
    def phone_id_must_be_digits(cls, v):
        if v is not None and not re.match(r"^\d+$", v):
            raise ValueError("WHATSAPP_PHONE_ID must contain only digits")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if not settings_obj.whatsapp_verify_token:
            raise ValueError("WHATSAPP_VERIFY_TOKEN is required")

        if settings_obj.environment == "production":
            for var in ["whatsapp_access_token", "whatsapp_phone_id", "shopify_access_token", "shopify_webhook_secret"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
