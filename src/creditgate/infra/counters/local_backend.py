"""In-process counter store used when Redis is unreachable.

State lives in a dict guarded by an ``asyncio.Lock`` and is lost on
restart; every replica counts on its own.  Acceptable for rate limits,
quotas and slots, never for balances or webhook claims.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from datetime import timedelta
from fnmatch import fnmatchcase

from .base import CounterStore

_SWEEP_EVERY = 1024


class MemoryCounterStore(CounterStore):
    """Dict-backed ``CounterStore`` with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._writes = 0

    def _live(self, key: str, now: float) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._entries[key]
            return None
        return value

    def _after_write(self, now: float) -> None:
        self._writes += 1
        if self._writes % _SWEEP_EVERY:
            return
        expired = [k for k, (_, exp) in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]

    async def increment(self, key: str, ttl: timedelta) -> int:
        async with self._lock:
            now = self._clock()
            current = self._live(key, now)
            if current is None:
                new_value = 1
                expires_at = now + ttl.total_seconds()
            else:
                new_value = int(current) + 1
                expires_at = self._entries[key][1]
            self._entries[key] = (str(new_value), expires_at)
            self._after_write(now)
            return new_value

    async def get(self, key: str) -> int:
        async with self._lock:
            value = self._live(key, self._clock())
        return int(value) if value is not None else 0

    async def set(self, key: str, value: int, ttl: timedelta) -> None:
        async with self._lock:
            now = self._clock()
            self._entries[key] = (str(value), now + ttl.total_seconds())
            self._after_write(now)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def set_if_absent(self, key: str, value: str, ttl: timedelta) -> bool:
        async with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._entries[key] = (value, now + ttl.total_seconds())
            self._after_write(now)
            return True

    async def delete_if_equal(self, key: str, value: str) -> bool:
        async with self._lock:
            if self._live(key, self._clock()) != value:
                return False
            del self._entries[key]
            return True

    async def ttl(self, key: str) -> int:
        async with self._lock:
            now = self._clock()
            if self._live(key, now) is None:
                return 0
            return math.ceil(self._entries[key][1] - now)

    async def scan(self, pattern: str) -> dict[str, int]:
        async with self._lock:
            now = self._clock()
            matched = [k for k in self._entries if fnmatchcase(k, pattern)]
            result: dict[str, int] = {}
            for key in matched:
                value = self._live(key, now)
                if value is not None:
                    result[key] = int(value)
            return result

    async def aclose(self) -> None:
        async with self._lock:
            self._entries.clear()
