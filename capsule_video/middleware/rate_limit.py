"""Rate limiting middleware using slowapi."""

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from ..config import settings

# Default limit for every route; uploads get a stricter one
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
)

rate_limit_exceeded_handler = _rate_limit_exceeded_handler

upload_limit = settings.upload_rate_limit
