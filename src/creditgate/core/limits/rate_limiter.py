"""Fixed-window rate limiter on top of ``CounterStore``.

Each check increments ``rate:{scope}:{identity}:{window}:{bucket}``
(``bucket`` = wall-clock seconds // window length) with a TTL of one
window, then compares the new count to the limit.  The attempt counts
even when it is rejected; ``count == limit`` is still allowed.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from creditgate.core.metrics import RATE_LIMIT_DECISIONS_TOTAL
from creditgate.infra.counters.base import CounterStore
from creditgate.infra.telemetry import (
    ATTR_RATE_ALLOWED,
    ATTR_RATE_SCOPE,
    SPAN_RATE_CHECK,
    tracer,
)

from .base import RateResult

logger = logging.getLogger(__name__)

MINUTE = 60
BURST_WINDOW = 10
_GLOBAL_HOUR_TTL = timedelta(hours=2)

_WINDOW_LABELS = {MINUTE: "1m", BURST_WINDOW: "10s"}


class RateLimiter:
    """Per-IP, per-user, per-endpoint and service-wide window checks."""

    def __init__(
        self,
        store: CounterStore,
        *,
        ip_per_minute: int = 30,
        ip_burst_per_10s: int = 10,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ip_per_minute = ip_per_minute
        self._ip_burst = ip_burst_per_10s
        self._enabled = enabled
        self._clock = clock

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    async def check_ip(self, ip: str) -> RateResult:
        """Per-minute and 10-second burst budgets; rejected if either is over."""
        if not self._enabled:
            return RateResult.unlimited()
        minute, burst = await asyncio.gather(
            self._window("ip", ip, self._ip_per_minute, MINUTE),
            self._window("ip", ip, self._ip_burst, BURST_WINDOW),
        )
        return self._record("ip", _combine(minute, burst))

    async def check_user(self, user_id: str, per_minute: int) -> RateResult:
        if not self._enabled:
            return RateResult.unlimited()
        result = await self._window("user", user_id, per_minute, MINUTE)
        return self._record("user", result)

    async def check_endpoint(
        self, endpoint_key: str, identity: str, per_minute: int
    ) -> RateResult:
        if not self._enabled:
            return RateResult.unlimited()
        result = await self._window(
            f"endpoint:{endpoint_key}", identity, per_minute, MINUTE
        )
        return self._record("endpoint", result)

    async def check_global_hour(self, limit_per_hour: int) -> RateResult:
        """Service-wide hourly cap on metered calls (0 disables)."""
        if not self._enabled or limit_per_hour <= 0:
            return RateResult.unlimited()
        now = self._clock()
        hour = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%dT%H")
        count = await self._store.increment(f"rate:global:ai:{hour}", _GLOBAL_HOUR_TTL)
        reset = math.ceil(3600 - now % 3600)
        return self._record("global", _result(count, limit_per_hour, reset))

    # -----------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------

    async def _window(
        self, scope: str, identity: str, limit: int, window_seconds: int
    ) -> RateResult:
        now = self._clock()
        bucket = int(now // window_seconds)
        label = _WINDOW_LABELS.get(window_seconds, f"{window_seconds}s")
        key = f"rate:{scope}:{identity}:{label}:{bucket}"
        with tracer.start_as_current_span(SPAN_RATE_CHECK) as span:
            span.set_attribute(ATTR_RATE_SCOPE, scope)
            count = await self._store.increment(key, timedelta(seconds=window_seconds))
            result = _result(count, limit, math.ceil(window_seconds - now % window_seconds))
            span.set_attribute(ATTR_RATE_ALLOWED, result.allowed)
        return result

    def _record(self, scope: str, result: RateResult) -> RateResult:
        RATE_LIMIT_DECISIONS_TOTAL.labels(
            scope=scope, result="allowed" if result.allowed else "rejected"
        ).inc()
        if not result.allowed:
            logger.info(
                "Rate limit hit (scope=%s, limit=%d, reset=%ds)",
                scope,
                result.limit,
                result.reset_seconds,
            )
        return result


def _result(count: int, limit: int, reset_seconds: int) -> RateResult:
    return RateResult(
        allowed=count <= limit,
        limit=limit,
        remaining=max(0, limit - count),
        reset_seconds=reset_seconds,
    )


def _combine(minute: RateResult, burst: RateResult) -> RateResult:
    """Report the window that rejected, else the one with less headroom."""
    if not burst.allowed:
        return burst
    if not minute.allowed:
        return minute
    return burst if burst.remaining < minute.remaining else minute
