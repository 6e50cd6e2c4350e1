"""ConcurrencyGate -- bounded per-identity slots with TTL crash recovery."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from creditgate.core.metrics import GATE_ACQUIRES_TOTAL
from creditgate.infra.counters.base import BackendUnavailable, CounterStore
from creditgate.infra.telemetry import (
    ATTR_GATE_DEGRADED,
    ATTR_GATE_SLOT,
    SPAN_GATE_SLOT,
    tracer,
)

from .base import TooManyConcurrent

logger = logging.getLogger(__name__)

_RETRY_AFTER_SECONDS = 5


@dataclass(frozen=True)
class GateTicket:
    """Result of ``acquire``.  Pass it back to ``release``."""

    ok: bool
    identity: str
    slot_id: int | None = None
    token: str | None = None
    degraded: bool = False


class ConcurrencyGate:
    """At most ``max_slots`` in-flight calls per identity.

    Slot ``n`` for an identity is the key ``lock:{identity}:{n}``, taken
    with set-if-absent and an expiry.  The expiry is the safety net for
    holders that die without releasing; ``slot()`` is the primary
    release path.  There is no queue and no fairness between waiters.

    Usage::

        async with gate.slot(identity):
            await call_upstream()
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        max_slots: int = 2,
        ttl: timedelta = timedelta(seconds=45),
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._max_slots = max_slots
        self._ttl = ttl
        self._enabled = enabled

    async def acquire(
        self,
        identity: str,
        max_slots: int | None = None,
        ttl: timedelta | None = None,
    ) -> GateTicket:
        """Take the first free slot, or return ``ok=False`` if all are held.

        When the store itself is unreachable the gate admits the call
        (``degraded=True``, nothing to release).
        """
        if not self._enabled:
            return GateTicket(ok=True, identity=identity)

        slots = max_slots if max_slots is not None else self._max_slots
        expiry = ttl if ttl is not None else self._ttl
        token = secrets.token_hex(8)
        try:
            for slot_id in range(1, slots + 1):
                key = _slot_key(identity, slot_id)
                if await self._store.set_if_absent(key, token, expiry):
                    GATE_ACQUIRES_TOTAL.labels(result="ok").inc()
                    return GateTicket(
                        ok=True, identity=identity, slot_id=slot_id, token=token
                    )
        except BackendUnavailable as exc:
            GATE_ACQUIRES_TOTAL.labels(result="degraded").inc()
            logger.warning(
                "Concurrency gate unavailable, admitting %s without a slot: %s",
                identity,
                exc,
            )
            return GateTicket(ok=True, identity=identity, degraded=True)

        GATE_ACQUIRES_TOTAL.labels(result="full").inc()
        return GateTicket(ok=False, identity=identity)

    async def release(self, ticket: GateTicket) -> None:
        """Best-effort release; never raises."""
        if not ticket.ok or ticket.slot_id is None or ticket.token is None:
            return
        key = _slot_key(ticket.identity, ticket.slot_id)
        try:
            released = await self._store.delete_if_equal(key, ticket.token)
        except Exception:
            logger.warning(
                "Failed to release %s; it expires in at most %s",
                key,
                self._ttl,
                exc_info=True,
            )
            return
        if not released:
            logger.info("Slot %s expired before release", key)

    @asynccontextmanager
    async def slot(self, identity: str) -> AsyncGenerator[GateTicket, None]:
        """Hold a slot for the body of the ``async with``.

        Raises:
            TooManyConcurrent: when every slot is held.
        """
        with tracer.start_as_current_span(SPAN_GATE_SLOT) as span:
            ticket = await self.acquire(identity)
            span.set_attribute(ATTR_GATE_DEGRADED, ticket.degraded)
            if not ticket.ok:
                raise TooManyConcurrent(
                    f"Too many concurrent requests (max {self._max_slots})",
                    max_slots=self._max_slots,
                    retry_after=_RETRY_AFTER_SECONDS,
                )
            if ticket.slot_id is not None:
                span.set_attribute(ATTR_GATE_SLOT, ticket.slot_id)
            try:
                yield ticket
            finally:
                await self.release(ticket)


def _slot_key(identity: str, slot_id: int) -> str:
    return f"lock:{identity}:{slot_id}"
