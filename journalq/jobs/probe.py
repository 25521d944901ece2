"""
Startup probe for the durable backend.

Tries Redis once, within a bounded timeout. Failure is never fatal: the
caller falls back to the in-process backend and keeps running.
"""

import asyncio
from typing import Optional

from redis.asyncio import Redis

from journalq.utils.logging import backend_logger as logger


def _display_url(redis_url: str) -> str:
    """Strip credentials before logging a URL."""
    return redis_url.split("@")[-1] if "@" in redis_url else redis_url


async def probe_durable_backend(
    redis_url: Optional[str],
    timeout: float = 3.0
) -> Optional[Redis]:
    """
    Return a connected Redis client, or None if Redis is unusable.

    Args:
        redis_url: redis:// or rediss:// URL; None skips the probe
        timeout: seconds allowed for connect + PING

    Returns:
        Redis client (decode_responses=True) or None
    """
    if not redis_url:
        logger.info("No REDIS_URL configured - running with in-process queue")
        return None

    client = Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
        health_check_interval=30,
    )

    try:
        await asyncio.wait_for(client.ping(), timeout=timeout)
    except Exception as e:
        logger.warning(
            "Redis unavailable, queue running in degraded (non-durable) mode",
            redis=_display_url(redis_url),
            error=str(e) or type(e).__name__,
        )
        try:
            await client.aclose()
        except Exception as close_error:
            logger.debug("Ignoring error while closing probe client", error=str(close_error))
        return None

    logger.info("Redis connected", redis=_display_url(redis_url))
    return client
