"""Async Redis client lifespan dependency.

``build_redis`` creates the shared client and pings it once.  When Redis
cannot be reached it yields ``None`` and the counter store runs on the
in-process fallback for the life of the process.
"""

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from redis.asyncio import Redis
from redis.exceptions import RedisError

from creditgate.configs.config import AppConfig, get_app_config

logger = logging.getLogger(__name__)


async def build_redis(
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[Redis | None, None]:
    """Create a Redis client; yield ``None`` if unreachable."""
    tp = config.third_party
    client = Redis.from_url(
        tp.redis_uri,
        decode_responses=True,
        socket_timeout=tp.redis_socket_timeout,
        socket_connect_timeout=tp.redis_socket_timeout,
    )
    verified: Redis | None = None
    try:
        await client.ping()
        verified = client
    except (RedisError, OSError):
        logger.warning(
            "Redis unavailable -- counters fall back to process memory "
            "(not shared across replicas)."
        )

    yield verified

    await client.aclose()
