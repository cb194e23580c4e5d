# binthere/services/redis_client.py
"""Connection helpers for the shared Redis store that holds rate-limit counters.

Only INCR and EXPIRE are used. Errors are left to the caller: the rate limiter
decides what an unreachable store means.
"""
from typing import Optional

import structlog
from redis.asyncio import Redis

from binthere.core.config import settings

logger = structlog.get_logger(__name__)


def create_redis_client(url: Optional[str] = None) -> Optional[Redis]:
    url = url or settings.REDIS_URL
    if not url:
        logger.warning("redis_not_configured", detail="rate limiting will fail open")
        return None
    # Upstash dashboards hand out quoted values that end up verbatim in .env files
    url = url.strip().strip('"').strip("'")
    return Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2)


async def close_redis_client(client: Optional[Redis]) -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as e:
        logger.error("redis_close_error", error=str(e))
