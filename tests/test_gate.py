"""Tests for the per-identity concurrency gate."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import fakeredis
import pytest

from creditgate.core.limits.base import TooManyConcurrent
from creditgate.core.limits.gate import ConcurrencyGate
from creditgate.infra.counters import (
    BackendUnavailable,
    FallbackCounterStore,
    MemoryCounterStore,
    RedisCounterStore,
)


class _UnreachableStore(MemoryCounterStore):
    async def set_if_absent(self, key, value, ttl):
        raise BackendUnavailable("redis down")


def _make_gate(store, **kwargs) -> ConcurrencyGate:
    return ConcurrencyGate(store, **kwargs)


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_two_slots_third_rejected(self, store):
        gate = _make_gate(store, max_slots=2)
        tickets = await asyncio.gather(*(gate.acquire("user-1") for _ in range(3)))
        assert sum(t.ok for t in tickets) == 2
        assert {t.slot_id for t in tickets if t.ok} == {1, 2}

    @pytest.mark.asyncio
    async def test_release_frees_slot(self, store):
        gate = _make_gate(store, max_slots=1)
        first = await gate.acquire("user-1")
        assert not (await gate.acquire("user-1")).ok
        await gate.release(first)
        assert (await gate.acquire("user-1")).ok

    @pytest.mark.asyncio
    async def test_identities_do_not_share_slots(self, store):
        gate = _make_gate(store, max_slots=1)
        assert (await gate.acquire("user-1")).ok
        assert (await gate.acquire("user-2")).ok

    @pytest.mark.asyncio
    async def test_abandoned_slot_expires(self, store, clock):
        gate = _make_gate(store, max_slots=1, ttl=timedelta(seconds=45))
        await gate.acquire("user-1")
        clock.advance(45)
        assert (await gate.acquire("user-1")).ok

    @pytest.mark.asyncio
    async def test_stale_release_leaves_new_holder(self, store, clock):
        gate = _make_gate(store, max_slots=1, ttl=timedelta(seconds=45))
        stale = await gate.acquire("user-1")
        clock.advance(45)
        await gate.acquire("user-1")
        await gate.release(stale)
        assert not (await gate.acquire("user-1")).ok

    @pytest.mark.asyncio
    async def test_disabled_always_admits(self, store):
        gate = _make_gate(store, max_slots=1, enabled=False)
        for _ in range(5):
            assert (await gate.acquire("user-1")).ok
        assert await store.scan("lock:*") == {}


class TestSlotContext:
    @pytest.mark.asyncio
    async def test_raises_when_full(self, store):
        gate = _make_gate(store, max_slots=1)
        async with gate.slot("user-1"):
            with pytest.raises(TooManyConcurrent) as exc_info:
                async with gate.slot("user-1"):
                    pass
        assert exc_info.value.max_slots == 1
        assert exc_info.value.retry_after > 0

    @pytest.mark.asyncio
    async def test_releases_on_exception(self, store):
        gate = _make_gate(store, max_slots=1)
        with pytest.raises(RuntimeError):
            async with gate.slot("user-1"):
                raise RuntimeError("upstream exploded")
        assert await store.scan("lock:*") == {}
        async with gate.slot("user-1") as ticket:
            assert ticket.ok

    @pytest.mark.asyncio
    async def test_unreachable_store_admits_degraded(self, clock):
        gate = _make_gate(_UnreachableStore(clock=clock), max_slots=1)
        async with gate.slot("user-1") as first:
            async with gate.slot("user-1") as second:
                assert first.degraded and second.degraded
                assert first.slot_id is None


class TestReleaseDuringOutage:
    @pytest.mark.asyncio
    async def test_redis_held_slot_logged_as_failed_release(self, caplog):
        primary = RedisCounterStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        gate = _make_gate(FallbackCounterStore(primary, MemoryCounterStore()), max_slots=1)
        ticket = await gate.acquire("user-1")
        assert ticket.ok and not ticket.degraded

        async def _refused(*args):
            raise BackendUnavailable("connection reset")

        primary.delete_if_equal = _refused
        with caplog.at_level(logging.INFO, logger="creditgate.core.limits.gate"):
            await gate.release(ticket)

        messages = [(r.levelno, r.getMessage()) for r in caplog.records]
        assert any(
            level == logging.WARNING and msg.startswith("Failed to release lock:user-1:1")
            for level, msg in messages
        )
        assert not any("expired before release" in msg for _, msg in messages)
        assert await primary.ttl("lock:user-1:1") > 0
