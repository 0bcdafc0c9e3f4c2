"""Rate limiting middleware using SlowAPI."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from podlearn.config import get_settings

settings = get_settings()


def get_user_or_ip(request: Request) -> str:
    """
    Get rate limit key from the authenticated user or the IP address.

    The auth dependency stores the user id on request state before the
    limited endpoint runs.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"

    # Fall back to IP address
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_user_or_ip,
    storage_uri=settings.rate_limit_storage_uri,
    strategy="fixed-window",
    enabled=settings.rate_limit_enabled,
)


def rate_limit_llm():
    """Rate limit for endpoints that fan out to the speech-to-text or LLM providers."""
    return limiter.limit(
        f"{settings.rate_limit_per_minute}/minute",
        key_func=get_user_or_ip,
    )
