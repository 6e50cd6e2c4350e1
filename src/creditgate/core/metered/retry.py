"""Deadline-plus-retry wrapper for the metered upstream call."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TypeVar

from creditgate.core.metrics import UPSTREAM_ATTEMPTS_TOTAL, UPSTREAM_LATENCY_SECONDS
from creditgate.infra.telemetry import ATTR_UPSTREAM_ATTEMPT, SPAN_UPSTREAM_CALL, tracer

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UpstreamError(Exception):
    """Raised when the upstream call fails on its last attempt."""


class UpstreamTimeout(UpstreamError):
    """Raised when the last attempt ran past its deadline."""


def _retry_everything(exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Run an awaitable factory with a per-attempt deadline.

    ``max_attempts=2`` is the first call plus one retry.  Between
    attempts the policy sleeps ``backoff``, multiplied by
    ``backoff_multiplier`` after each retry.  Exceptions for which
    *retryable* returns ``False`` propagate unchanged without a retry.
    """

    max_attempts: int = 2
    backoff: timedelta = timedelta(milliseconds=300)
    backoff_multiplier: float = 1.0
    timeout: timedelta = timedelta(seconds=30)
    retryable: Callable[[BaseException], bool] = field(default=_retry_everything)

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, self.max_attempts)
        delay = self.backoff.total_seconds()
        deadline = self.timeout.total_seconds()
        started = time.perf_counter()
        last_exc: Exception | None = None

        for attempt in range(1, attempts + 1):
            with tracer.start_as_current_span(SPAN_UPSTREAM_CALL) as span:
                span.set_attribute(ATTR_UPSTREAM_ATTEMPT, attempt)
                try:
                    async with asyncio.timeout(deadline):
                        result = await fn()
                except TimeoutError as exc:
                    UPSTREAM_ATTEMPTS_TOTAL.labels(result="timeout").inc()
                    last_exc = exc
                except Exception as exc:
                    UPSTREAM_ATTEMPTS_TOTAL.labels(result="error").inc()
                    if not self.retryable(exc):
                        raise
                    last_exc = exc
                else:
                    UPSTREAM_ATTEMPTS_TOTAL.labels(result="ok").inc()
                    UPSTREAM_LATENCY_SECONDS.observe(time.perf_counter() - started)
                    return result

            if attempt < attempts:
                logger.warning(
                    "Upstream attempt %d/%d failed (%r); retrying in %.2fs",
                    attempt,
                    attempts,
                    last_exc,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= self.backoff_multiplier

        if isinstance(last_exc, TimeoutError):
            raise UpstreamTimeout(
                f"Upstream did not answer within {deadline:g}s "
                f"({attempts} attempt(s))"
            ) from last_exc
        raise UpstreamError(f"Upstream call failed: {last_exc}") from last_exc
