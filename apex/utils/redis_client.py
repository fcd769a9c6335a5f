"""
Shared Redis connection (alert cooldowns, worker heartbeats, readiness check).
"""
import logging

import redis.asyncio as aioredis

from apex.config import get_settings

logger = logging.getLogger(__name__)

# Lazily initialized
_redis_client = None


async def get_redis():
    """Get or create the Redis connection."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.debug("Redis close failed: %s", str(e))
        _redis_client = None
