"""Redis connection configuration."""

from typing import Optional

import redis.asyncio as redis

from coursemedia.core.config import settings


def create_redis(url: Optional[str] = None) -> redis.Redis:
    """Create a Redis client.

    The job store keeps JSON payloads, so responses are decoded to str.
    """
    return redis.from_url(url or settings.REDIS_URL, decode_responses=True)
