from typing import Optional

from fastapi import Request

from binthere.core.config import settings
from binthere.core.errors import AuthenticationRequired, ConfigurationError, RateLimitedError
from binthere.models.dto import RateLimitConfig, RateLimitResult
from binthere.services.identity import IdentityResolver
from binthere.services.rate_limiter import RateLimiter
from binthere.utils.security import get_bearer_token, get_client_ip


def rate_limited(endpoint: str, max_requests: int, window_seconds: int = settings.RATE_LIMIT_WINDOW_SECONDS):
    """Dependency that counts the request against a per-IP window and raises when it is full."""
    config = RateLimitConfig(max_requests=max_requests, window_seconds=window_seconds)

    async def dependency(request: Request) -> RateLimitResult:
        limiter: RateLimiter = request.app.state.rate_limiter
        result = await limiter.check(get_client_ip(request), endpoint, config)
        if not result.allowed:
            raise RateLimitedError(result, now=limiter.clock())
        return result

    return dependency


async def optional_user_id(request: Request) -> Optional[str]:
    token = get_bearer_token(request)
    if not token:
        return None
    identity: IdentityResolver = request.app.state.identity
    return await identity.resolve(token)


async def require_user_id(request: Request) -> str:
    token = get_bearer_token(request)
    if not token:
        raise AuthenticationRequired()
    identity: IdentityResolver = request.app.state.identity
    if not identity.configured:
        raise ConfigurationError("AUTH_URL")
    user_id = await identity.resolve(token)
    if not user_id:
        raise AuthenticationRequired()
    return user_id
