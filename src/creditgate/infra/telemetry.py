"""OpenTelemetry bootstrap -- tracing initialisation and span names.

Configures a ``TracerProvider`` with an OTLP HTTP exporter when
``TracingConfig.enabled`` is set; otherwise every span below is a no-op
from the default provider.

Auto-instrumentations wired here:

- **FastAPI** (inbound HTTP spans)
- **httpx** (outbound HTTP spans: the upstream model call, invoice hand-off)
- **SQLAlchemy** (ledger and idempotency queries)

Usage::

    from creditgate.infra.telemetry import SPAN_LEDGER_APPLY, tracer

    with tracer.start_as_current_span(SPAN_LEDGER_APPLY) as span:
        ...
"""

from __future__ import annotations

import base64
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, FastAPI
from opentelemetry import trace

from creditgate.configs.system import TracingConfig
from creditgate.infra.db_engine import build_db
from creditgate.infra.lifespan import get_app

logger = logging.getLogger(__name__)

_otel_enabled = False

tracer = trace.get_tracer("creditgate")

# ---------------------------------------------------------------------------
# Span names
# ---------------------------------------------------------------------------

SPAN_RATE_CHECK = "limits.rate_check"
SPAN_QUOTA_CHECK = "limits.quota_check"
SPAN_GATE_SLOT = "gate.slot"
SPAN_WEBHOOK_PROCESS = "webhook.process"
SPAN_LEDGER_APPLY = "ledger.apply"
SPAN_LEDGER_CONSUME = "ledger.consume"
SPAN_UPSTREAM_CALL = "upstream.call"

# ---------------------------------------------------------------------------
# Span attribute keys
# ---------------------------------------------------------------------------

ATTR_RATE_SCOPE = "limits.scope"
ATTR_RATE_ALLOWED = "limits.allowed"
ATTR_QUOTA_USED = "limits.quota_used"
ATTR_GATE_SLOT = "gate.slot_id"
ATTR_GATE_DEGRADED = "gate.degraded"
ATTR_WEBHOOK_EVENT_TYPE = "webhook.event_type"
ATTR_WEBHOOK_EVENT_KEY = "webhook.event_key"
ATTR_WEBHOOK_OUTCOME = "webhook.outcome"
ATTR_LEDGER_DELTA = "ledger.delta"
ATTR_LEDGER_TRANSACTION_TYPE = "ledger.transaction_type"
ATTR_UPSTREAM_MODEL = "upstream.model"
ATTR_UPSTREAM_ATTEMPT = "upstream.attempt"


def init_telemetry(
    app: object | None = None,
    settings: TracingConfig | None = None,
) -> None:
    """Initialise the OTEL ``TracerProvider`` and auto-instrumentations.

    No-op when *settings* is ``None`` or disabled.
    """
    global _otel_enabled  # noqa: PLW0603

    if settings is None or not settings.enabled:
        logger.info("OpenTelemetry tracing disabled.")
        return

    if not settings.endpoint:
        logger.warning(
            "Tracing enabled but no endpoint configured; skipping OpenTelemetry setup."
        )
        return

    from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
        OTLPSpanExporter,
    )
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

    resource = Resource.create({"service.name": settings.service_name})
    sampler = ParentBased(root=TraceIdRatioBased(settings.sample_rate))
    provider = TracerProvider(resource=resource, sampler=sampler)

    headers: dict[str, str] = {}
    if settings.username and settings.password:
        credentials = f"{settings.username}:{settings.password}"
        encoded = base64.b64encode(credentials.encode()).decode()
        headers["Authorization"] = f"Basic {encoded}"

    exporter = OTLPSpanExporter(endpoint=settings.endpoint, headers=headers)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    if app is not None:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

        excluded = ",".join(settings.excluded_urls) if settings.excluded_urls else ""
        FastAPIInstrumentor.instrument_app(app, excluded_urls=excluded)

    from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

    HTTPXClientInstrumentor().instrument()

    _otel_enabled = True
    logger.info(
        "OpenTelemetry tracing initialised (service=%s).", settings.service_name
    )


def instrument_sqlalchemy(engine: object) -> None:
    """Instrument a SQLAlchemy engine.  No-op when OTEL is not enabled."""
    if not _otel_enabled:
        return

    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

    sync_engine = getattr(engine, "sync_engine", engine)
    SQLAlchemyInstrumentor().instrument(engine=sync_engine)
    logger.info("SQLAlchemy engine instrumented for OTEL tracing.")


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_telemetry(
    app: Annotated[FastAPI, Depends(get_app)],
    _db: Annotated[None, Depends(build_db)],
) -> AsyncGenerator[None, None]:
    """Instrument the engine created by ``build_db``.

    ``init_telemetry`` itself runs in ``get_app`` because the FastAPI
    instrumentor adds middleware.
    """
    instrument_sqlalchemy(app.state.engine)
    yield
