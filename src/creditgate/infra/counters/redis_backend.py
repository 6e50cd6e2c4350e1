"""Distributed counter store backed by Redis Lua scripts."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .base import BackendUnavailable, CounterStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lua scripts
# ---------------------------------------------------------------------------

# INCR and set the expiry only when the key was just created (or somehow
# lost its TTL), so a window never slides forward on later hits.
# KEYS[1] = counter key, ARGV[1] = TTL seconds.  Returns the new count.
_LUA_INCR = """
local n = redis.call('INCR', KEYS[1])
if n == 1 or redis.call('TTL', KEYS[1]) < 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return n
"""

# Delete the key only while it still holds the caller's token.
# KEYS[1] = lock key, ARGV[1] = token.  Returns 1 when deleted.
_LUA_DELETE_IF_EQUAL = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_SCAN_BATCH = 500


def _seconds(ttl: timedelta) -> int:
    return max(1, int(ttl.total_seconds()))


class RedisCounterStore(CounterStore):
    """``CounterStore`` shared by every replica through one Redis.

    Connection and timeout errors surface as ``BackendUnavailable`` so
    callers can decide whether to degrade.
    """

    def __init__(self, redis: Redis) -> None:
        self._redis = redis
        self._shas: dict[str, str] = {}

    @asynccontextmanager
    async def _guard(self, op: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise BackendUnavailable(f"Redis {op} failed: {exc}") from exc

    async def _eval(self, script: str, keys: list[str], args: list[str]) -> int:
        sha = self._shas.get(script)
        if sha is None:
            sha = await self._redis.script_load(script)
            self._shas[script] = sha
        try:
            result = await self._redis.evalsha(sha, len(keys), *keys, *args)
        except NoScriptError:
            # Script cache flushed (restart or SCRIPT FLUSH); load and retry once.
            logger.info("Redis script cache miss; reloading script %s", sha)
            sha = await self._redis.script_load(script)
            self._shas[script] = sha
            result = await self._redis.evalsha(sha, len(keys), *keys, *args)
        return int(result)

    async def increment(self, key: str, ttl: timedelta) -> int:
        async with self._guard("increment"):
            return await self._eval(_LUA_INCR, [key], [str(_seconds(ttl))])

    async def get(self, key: str) -> int:
        async with self._guard("get"):
            value = await self._redis.get(key)
        return int(value) if value is not None else 0

    async def set(self, key: str, value: int, ttl: timedelta) -> None:
        async with self._guard("set"):
            await self._redis.set(key, str(value), ex=_seconds(ttl))

    async def delete(self, key: str) -> None:
        async with self._guard("delete"):
            await self._redis.delete(key)

    async def set_if_absent(self, key: str, value: str, ttl: timedelta) -> bool:
        async with self._guard("set_if_absent"):
            created = await self._redis.set(key, value, nx=True, ex=_seconds(ttl))
        return bool(created)

    async def delete_if_equal(self, key: str, value: str) -> bool:
        async with self._guard("delete_if_equal"):
            return await self._eval(_LUA_DELETE_IF_EQUAL, [key], [value]) == 1

    async def ttl(self, key: str) -> int:
        async with self._guard("ttl"):
            remaining = await self._redis.ttl(key)
        return max(0, int(remaining))

    async def scan(self, pattern: str) -> dict[str, int]:
        async with self._guard("scan"):
            keys = [
                key
                async for key in self._redis.scan_iter(match=pattern, count=_SCAN_BATCH)
            ]
            result: dict[str, int] = {}
            for start in range(0, len(keys), _SCAN_BATCH):
                batch = keys[start : start + _SCAN_BATCH]
                values = await self._redis.mget(batch)
                for key, value in zip(batch, values):
                    if value is not None:
                        result[key] = int(value)
            return result

    async def aclose(self) -> None:
        # Redis client lifecycle is managed by infra/redis.py.
        pass
