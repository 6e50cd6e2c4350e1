"""Prometheus metrics for creditgate.

Business metrics that complement the HTTP metrics from
``prometheus-fastapi-instrumentator``.  All metrics use the
``creditgate_`` prefix.
"""

import logging

from fastapi import FastAPI
from prometheus_client import Counter, Histogram
from prometheus_fastapi_instrumentator import Instrumentator

from creditgate.configs.config import AppConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "creditgate_rate_limit_decisions_total",
    "Rate-limit checks by scope and outcome",
    ["scope", "result"],  # scope: ip | user | endpoint | global; result: allowed | rejected
)

QUOTA_REJECTIONS_TOTAL = Counter(
    "creditgate_quota_rejections_total",
    "Requests rejected because the daily quota was used up",
)

GATE_ACQUIRES_TOTAL = Counter(
    "creditgate_gate_acquires_total",
    "Concurrency slot acquisitions",
    ["result"],  # ok | full | degraded
)

BACKEND_FALLBACKS_TOTAL = Counter(
    "creditgate_backend_fallbacks_total",
    "Counter operations served by process memory because Redis failed",
    ["operation"],
)

PAYLOAD_REJECTIONS_TOTAL = Counter(
    "creditgate_payload_rejections_total",
    "Requests rejected for an oversized body",
)

# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

IDEMPOTENCY_CLAIMS_TOTAL = Counter(
    "creditgate_idempotency_claims_total",
    "Webhook event claims by result",
    ["result"],  # claimed | reclaimed | held
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "creditgate_webhook_events_total",
    "Payment webhook events by type and outcome",
    ["event_type", "outcome"],  # processed | duplicate | ignored | in_progress | error
)

CREDITS_APPLIED_TOTAL = Counter(
    "creditgate_credits_applied_total",
    "Credits added to balances",
    ["transaction_type"],
)

CREDITS_CONSUMED_TOTAL = Counter(
    "creditgate_credits_consumed_total",
    "Credits spent on metered calls",
)

INVOICE_DISPATCH_TOTAL = Counter(
    "creditgate_invoice_dispatch_total",
    "Invoice hand-offs by outcome",
    ["status"],  # ok | error
)

# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------

UPSTREAM_ATTEMPTS_TOTAL = Counter(
    "creditgate_upstream_attempts_total",
    "Upstream model call attempts",
    ["result"],  # ok | timeout | error
)

UPSTREAM_LATENCY_SECONDS = Histogram(
    "creditgate_upstream_latency_seconds",
    "Latency of a successful upstream model call, retries included",
    buckets=(0.25, 0.5, 1, 2, 5, 10, 20, 30, 60),
)


# ---------------------------------------------------------------------------
# HTTP instrumentation
# ---------------------------------------------------------------------------


def setup_metrics(app: FastAPI, config: AppConfig) -> None:
    """Attach HTTP instrumentation and the ``/metrics`` endpoint to *app*.

    Runs at app construction: Starlette refuses new middleware once the
    lifespan has started.
    """
    Instrumentator(
        should_instrument_requests_inprogress=True,
        excluded_handlers=config.tracing.excluded_urls,
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    logger.info("Prometheus metrics initialised")
