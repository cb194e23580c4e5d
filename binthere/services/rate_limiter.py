import math
import time
from typing import Callable, Optional

import structlog
from redis.asyncio import Redis

from binthere.models.dto import RateLimitConfig, RateLimitResult

logger = structlog.get_logger(__name__)


class RateLimiter:
    """
    Fixed-window request counter kept in Redis so that every worker sees the
    same count.

    Fails open: if the store is missing or any call to it fails, the request
    is allowed and a warning is logged.
    """

    def __init__(self, redis_client: Optional[Redis] = None, clock: Callable[[], float] = time.time):
        self.redis_client: Optional[Redis] = redis_client
        self.clock = clock

    @staticmethod
    def window_key(endpoint: str, identifier: str, window: int) -> str:
        return f"ratelimit:{endpoint}:{identifier}:{window}"

    async def check(self, identifier: str, endpoint: str, config: RateLimitConfig) -> RateLimitResult:
        now = self.clock()
        if not self.redis_client:
            logger.warning("rate_limiter_unavailable", reason="missing_configuration", endpoint=endpoint)
            return self._fail_open(now, config)

        window = math.floor(now / config.window_seconds)
        key = self.window_key(endpoint, identifier, window)
        try:
            count = int(await self.redis_client.incr(key))
            if count == 1:
                await self.redis_client.expire(key, config.window_seconds)
        except Exception as e:
            logger.warning("rate_limiter_unavailable", reason="store_error", error=str(e), endpoint=endpoint)
            return self._fail_open(now, config)

        allowed = count <= config.max_requests
        if not allowed:
            logger.info("rate_limit_exceeded", endpoint=endpoint, identifier=identifier, count=count)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.max_requests - count),
            reset_at=(window + 1) * config.window_seconds,
            limit=config.max_requests,
        )

    @staticmethod
    def _fail_open(now: float, config: RateLimitConfig) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=config.max_requests - 1,
            reset_at=int(now) + config.window_seconds,
            limit=config.max_requests,
        )
