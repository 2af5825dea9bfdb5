"""
Rate Limiter Configuration

In-memory slowapi limiter keyed by the real client IP. Limits can be switched
off with RATE_LIMIT_ENABLED=false (tests, local development).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from ..config import settings


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind a reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


limiter = Limiter(
    key_func=get_real_client_ip,
    default_limits=["100/minute"],
    enabled=settings.rate_limit_enabled,
)


RATE_LIMITS = {
    # Authentication - strict limits
    "login": "5/minute",
    "register": "10/minute",

    # Booking writes hit suppliers and the payment gateway
    "booking_create": "10/minute",
    "booking_update": "30/minute",

    # Read Operations - relaxed limits
    "booking_list": "100/minute",
    "booking_get": "200/minute",

    # Webhooks - higher limits for integrations
    "webhook": "300/minute",
}


def get_rate_limit(operation: str) -> str:
    """Get rate limit for a specific operation."""
    return RATE_LIMITS.get(operation, "100/minute")
