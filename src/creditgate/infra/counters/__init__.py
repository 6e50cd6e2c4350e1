"""Counters for rate limits, daily quotas and concurrency slots.

Two backends implement ``CounterStore``:

* Redis -- shared across replicas, Lua scripts for atomic
  increment-with-expiry and compare-and-delete.
* Memory -- in-process dict behind an ``asyncio.Lock``.

``FallbackCounterStore`` puts them together: Redis when it answers,
memory when it does not.
"""

from .base import BackendUnavailable, CounterStore
from .local_backend import MemoryCounterStore
from .redis_backend import RedisCounterStore
from .store import FallbackCounterStore, build_counter_store, get_counter_store

__all__ = [
    "BackendUnavailable",
    "CounterStore",
    "FallbackCounterStore",
    "MemoryCounterStore",
    "RedisCounterStore",
    "build_counter_store",
    "get_counter_store",
]
