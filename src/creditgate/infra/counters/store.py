"""Counter store selection and per-call degradation to process memory."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Request
from redis.asyncio import Redis

from creditgate.core.metrics import BACKEND_FALLBACKS_TOTAL
from creditgate.infra.lifespan import get_app
from creditgate.infra.redis import build_redis

from .base import BackendUnavailable, CounterStore
from .local_backend import MemoryCounterStore
from .redis_backend import RedisCounterStore

logger = logging.getLogger(__name__)


class FallbackCounterStore(CounterStore):
    """Routes to *primary* and answers from *fallback* when it is down.

    With ``primary=None`` (Redis unreachable at startup) every call goes
    to the fallback.  Otherwise each call tries the primary first, so
    the store recovers as soon as Redis does.
    """

    def __init__(
        self,
        primary: CounterStore | None,
        fallback: MemoryCounterStore | None = None,
    ) -> None:
        self._primary = primary
        self._fallback = fallback or MemoryCounterStore()

    @property
    def degraded(self) -> bool:
        return self._primary is None

    async def _run(self, op: str, *args: Any) -> Any:
        if self._primary is not None:
            try:
                return await getattr(self._primary, op)(*args)
            except BackendUnavailable as exc:
                BACKEND_FALLBACKS_TOTAL.labels(operation=op).inc()
                logger.warning("Counter %s served from memory: %s", op, exc)
        return await getattr(self._fallback, op)(*args)

    async def _release(self, op: str, key: str, *args: Any) -> Any:
        """Delete from the primary, or from memory only if memory holds *key*.

        Otherwise the primary's error propagates and a key held on Redis
        expires by its TTL.
        """
        if self._primary is None:
            return await getattr(self._fallback, op)(key, *args)
        try:
            return await getattr(self._primary, op)(key, *args)
        except BackendUnavailable as exc:
            if await self._fallback.ttl(key) <= 0:
                raise
            BACKEND_FALLBACKS_TOTAL.labels(operation=op).inc()
            logger.warning("Counter %s served from memory: %s", op, exc)
            return await getattr(self._fallback, op)(key, *args)

    async def increment(self, key: str, ttl: timedelta) -> int:
        return await self._run("increment", key, ttl)

    async def get(self, key: str) -> int:
        return await self._run("get", key)

    async def set(self, key: str, value: int, ttl: timedelta) -> None:
        await self._run("set", key, value, ttl)

    async def delete(self, key: str) -> None:
        await self._release("delete", key)

    async def set_if_absent(self, key: str, value: str, ttl: timedelta) -> bool:
        return await self._run("set_if_absent", key, value, ttl)

    async def delete_if_equal(self, key: str, value: str) -> bool:
        return await self._release("delete_if_equal", key, value)

    async def ttl(self, key: str) -> int:
        return await self._run("ttl", key)

    async def scan(self, pattern: str) -> dict[str, int]:
        return await self._run("scan", pattern)

    async def aclose(self) -> None:
        if self._primary is not None:
            await self._primary.aclose()
        await self._fallback.aclose()


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_counter_store(
    app: Annotated[FastAPI, Depends(get_app)],
    redis_client: Annotated[Redis | None, Depends(build_redis)],
) -> AsyncGenerator[None, None]:
    """Create the counter store, attach to ``app.state``; close on shutdown."""
    primary = RedisCounterStore(redis_client) if redis_client is not None else None
    store = FallbackCounterStore(primary)
    app.state.counter_store = store
    logger.info(
        "Counter store: %s backend",
        "Redis" if primary is not None else "local",
    )
    yield
    await store.aclose()


def get_counter_store(request: Request) -> CounterStore:
    """Return the ``CounterStore`` stored on ``app.state`` by the lifespan."""
    return request.app.state.counter_store
