"""Rate limiting middleware using SlowAPI."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from src.config import get_settings

settings = get_settings()


def get_api_key_or_ip(request: Request) -> str:
    """
    Get rate limit key from API key or IP address.

    Uses API key if authenticated, falls back to IP address.
    """
    if hasattr(request.state, "api_key") and request.state.api_key:
        return f"key:{request.state.api_key.id}"

    return f"ip:{get_remote_address(request)}"


# Redis in deployments; RATE_LIMIT_STORAGE_URI=memory:// for local runs and tests
limiter = Limiter(
    key_func=get_api_key_or_ip,
    storage_uri=settings.rate_limit_storage_uri or settings.redis_url,
    strategy="fixed-window",
)


def rate_limit_uploads():
    """Rate limit for document submission."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute}/minute;{settings.rate_limit_per_hour}/hour",
        key_func=get_api_key_or_ip,
    )


def rate_limit_general():
    """Rate limit for read endpoints."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute * 2}/minute",
        key_func=get_api_key_or_ip,
    )
