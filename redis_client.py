"""
Redis Client Module

Async Redis client (redis.asyncio) kept as a process-wide singleton.
Redis is optional: without REDIS_URL, or if the first PING fails, the
backend runs without the per-payment distributed lock.
"""
import logging
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Global Redis client instance (singleton)
_redis_client: Optional[redis.Redis] = None
REDIS_READY: bool = False


async def init_redis_client(redis_url: str) -> Optional[redis.Redis]:
    """
    Create the Redis client and verify it with PING.

    Args:
        redis_url: Connection URL (empty disables Redis)

    Returns:
        Connected client, or None if Redis is not configured or unreachable.
        Never raises: Redis is an optimization for payment completion, not a dependency.
    """
    global _redis_client, REDIS_READY

    if not redis_url:
        logger.info("Redis not configured - per-payment lock disabled")
        return None

    if _redis_client is not None and REDIS_READY:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
            max_connections=10,
        )
        REDIS_READY = bool(await _redis_client.ping())
    except (redis.RedisError, OSError) as e:
        REDIS_READY = False
        logger.warning(
            "REDIS_CONNECTION_FAILED",
            extra={
                "component": "infra",
                "operation": "redis_health_check",
                "outcome": "failed",
                "reason": str(e)[:100],
            },
        )

    if not REDIS_READY:
        await close_redis_client()
        return None

    logger.info(
        "REDIS_CONNECTED",
        extra={"component": "infra", "operation": "redis_health_check", "outcome": "success"},
    )
    return _redis_client


async def close_redis_client():
    """
    Close Redis client connection pool.

    Safe to call multiple times.
    """
    global _redis_client, REDIS_READY

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("Redis client closed")
        except (redis.RedisError, OSError) as e:
            logger.error(f"Error closing Redis client: {e}")
        finally:
            _redis_client = None
            REDIS_READY = False
