"""Admission control for the metered endpoint.

Checks run in a fixed order, cheapest first, and the first rejection
wins::

    payload size -> IP / user / global-hour windows -> daily quota
        -> concurrency slot -> endpoint body -> slot released

``admit_metered_call`` is an async-generator dependency: the endpoint
declares it and never touches limit logic directly.  The slot is held
across the ``yield`` and released in ``finally`` whatever the endpoint
does.  Rejections raise the exceptions in ``base``; the handlers in
``creditgate.api.exceptions`` turn them into 413/429 responses.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, FastAPI, Request, Response

from creditgate.configs.config import AppConfig, get_app_config
from creditgate.configs.system import LimitsConfig, QuotaConfig
from creditgate.core.billing.plans import PlanType
from creditgate.core.metrics import PAYLOAD_REJECTIONS_TOTAL, QUOTA_REJECTIONS_TOTAL
from creditgate.infra.counters import CounterStore, build_counter_store
from creditgate.infra.db import CreditLedger, get_credit_ledger
from creditgate.infra.identity import Identity, get_identity
from creditgate.infra.lifespan import get_app
from creditgate.infra.telemetry import ATTR_QUOTA_USED, SPAN_QUOTA_CHECK, tracer

from .base import PayloadTooLarge, QuotaExceeded, RateLimited, RateResult
from .gate import ConcurrencyGate, GateTicket
from .quota import QuotaTracker
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    """What the endpoint needs to know about an admitted call."""

    identity: Identity
    plan_type: PlanType
    used_today: int
    ticket: GateTicket


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


async def check_payload_size(request: Request, max_bytes: int) -> int:
    """Reject bodies over *max_bytes*; ``Content-Length`` wins when present."""
    declared = request.headers.get("content-length", "")
    size = int(declared) if declared.isdigit() else 0
    if size <= 0:
        size = len(await request.body())
    if size > max_bytes:
        PAYLOAD_REJECTIONS_TOTAL.inc()
        raise PayloadTooLarge(
            f"Request body of {size} bytes exceeds {max_bytes} bytes",
            size=size,
            limit=max_bytes,
        )
    return size


async def check_rate_limits(
    limiter: RateLimiter, identity: Identity, limits: LimitsConfig
) -> RateResult:
    """IP, then user, then the service-wide hour.

    Returns the per-identity result, which is what the
    ``X-RateLimit-*`` headers describe.
    """
    ip_result = await limiter.check_ip(identity.ip)
    if not ip_result.allowed:
        raise RateLimited("Too many requests from this IP", scope="ip", result=ip_result)

    result = ip_result
    if identity.user_id is not None or identity.key != identity.ip:
        result = await limiter.check_user(identity.key, limits.user_per_minute)
        if not result.allowed:
            raise RateLimited("Too many requests", scope="user", result=result)

    global_result = await limiter.check_global_hour(limits.global_per_hour)
    if not global_result.allowed:
        raise RateLimited(
            "Service is at capacity, try again later",
            scope="global",
            result=global_result,
        )
    return result


async def resolve_plan(identity: Identity, ledger: CreditLedger) -> PlanType:
    account_id = identity.account_id
    if account_id is None:
        return "free"
    account = await ledger.get_account(account_id)
    return account.plan_type if account is not None else "free"


async def check_daily_quota(
    quota: QuotaTracker, identity: Identity, plan_type: PlanType, config: QuotaConfig
) -> int:
    """Return today's usage; raise ``QuotaExceeded`` for an exhausted free plan."""
    with tracer.start_as_current_span(SPAN_QUOTA_CHECK) as span:
        used = await quota.get_daily_usage(identity.key)
        span.set_attribute(ATTR_QUOTA_USED, used)
    if plan_type == "free" and used >= config.free_daily_limit:
        QUOTA_REJECTIONS_TOTAL.inc()
        logger.info("Daily quota used up for %s (%d/%d)", identity.key, used, config.free_daily_limit)
        raise QuotaExceeded(
            f"Daily limit of {config.free_daily_limit} AI calls reached",
            limit=config.free_daily_limit,
            used=used,
        )
    return used


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_limits(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
    _store: Annotated[None, Depends(build_counter_store)],
) -> AsyncGenerator[None, None]:
    """Create the rate limiter, quota tracker and gate over the counter store."""
    store: CounterStore = app.state.counter_store
    limits = config.limits
    app.state.rate_limiter = RateLimiter(
        store,
        ip_per_minute=limits.ip_per_minute,
        ip_burst_per_10s=limits.ip_burst_per_10s,
        enabled=limits.enabled,
    )
    app.state.quota_tracker = QuotaTracker(store)
    app.state.concurrency_gate = ConcurrencyGate(
        store,
        max_slots=config.concurrency.max_slots,
        ttl=config.concurrency.slot_ttl,
        enabled=limits.enabled,
    )
    logger.info(
        "Limits: enabled=%s ip=%d/min burst=%d/10s user=%d/min global=%d/h slots=%d",
        limits.enabled,
        limits.ip_per_minute,
        limits.ip_burst_per_10s,
        limits.user_per_minute,
        limits.global_per_hour,
        config.concurrency.max_slots,
    )
    yield


# ---------------------------------------------------------------------------
# Per-request dependencies
# ---------------------------------------------------------------------------


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_quota_tracker(request: Request) -> QuotaTracker:
    return request.app.state.quota_tracker


def get_concurrency_gate(request: Request) -> ConcurrencyGate:
    return request.app.state.concurrency_gate


async def admit_metered_call(
    request: Request,
    response: Response,
    identity: Annotated[Identity, Depends(get_identity)],
    config: Annotated[AppConfig, Depends(get_app_config)],
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    quota: Annotated[QuotaTracker, Depends(get_quota_tracker)],
    gate: Annotated[ConcurrencyGate, Depends(get_concurrency_gate)],
    ledger: Annotated[CreditLedger, Depends(get_credit_ledger)],
) -> AsyncGenerator[Admission, None]:
    """Side-effect dependency: every limit, then a held concurrency slot."""
    await check_payload_size(request, config.limits.max_body_bytes)
    rate = await check_rate_limits(limiter, identity, config.limits)
    response.headers.update(rate.headers())

    plan_type = await resolve_plan(identity, ledger)
    used = await check_daily_quota(quota, identity, plan_type, config.quota)

    async with gate.slot(identity.key) as ticket:
        yield Admission(identity=identity, plan_type=plan_type, used_today=used, ticket=ticket)


def endpoint_limit(endpoint_key: str) -> Callable[..., Any]:
    """Dependency factory: per-IP budget for one sensitive endpoint."""

    async def enforce(
        response: Response,
        identity: Annotated[Identity, Depends(get_identity)],
        config: Annotated[AppConfig, Depends(get_app_config)],
        limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    ) -> None:
        result = await limiter.check_endpoint(
            endpoint_key, identity.ip, config.limits.endpoint_per_minute
        )
        if not result.allowed:
            raise RateLimited(
                f"Too many requests to {endpoint_key}", scope="endpoint", result=result
            )
        response.headers.update(result.headers())

    return enforce
