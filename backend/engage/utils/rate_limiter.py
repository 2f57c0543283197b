# /engage/utils/rate_limiter.py

from slowapi import Limiter
from engage.utils.request_utils import get_remote_address
from engage.config.settings import settings

# Single limiter instance shared by main.py and the routers.

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
    enabled=settings.environment != "test",
)
