"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, FastAPI

from creditgate.api.exceptions import build_exception_handlers
from creditgate.api.health import router as health_router
from creditgate.api.proxy import router as proxy_router
from creditgate.api.quota import router as quota_router
from creditgate.api.webhook import router as webhook_router
from creditgate.configs.config import get_app_config
from creditgate.core.billing.processor import build_webhook_processor
from creditgate.core.billing.provider import build_stripe_gateway
from creditgate.core.limits.guards import build_limits
from creditgate.core.metered.client import build_metered_client
from creditgate.core.metrics import setup_metrics
from creditgate.infra.lifespan import inject
from creditgate.infra.logging import setup_logging
from creditgate.infra.telemetry import build_telemetry, init_telemetry

logger = logging.getLogger(__name__)


async def lifespan(
    app: FastAPI,
    _handlers: Annotated[None, Depends(build_exception_handlers)],
    _telemetry: Annotated[None, Depends(build_telemetry)],
    _limits: Annotated[None, Depends(build_limits)],
    _billing: Annotated[None, Depends(build_webhook_processor)],
    _stripe: Annotated[None, Depends(build_stripe_gateway)],
    _metered: Annotated[None, Depends(build_metered_client)],
) -> AsyncGenerator[None, None]:
    """Startup resources are the ``build_*`` dependencies above."""
    logger.info("creditgate started")
    yield
    logger.info("creditgate shutting down")


def get_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    config = get_app_config()
    setup_logging(config.logging)

    app = FastAPI(
        title="creditgate",
        description="Usage limits and an idempotent credit ledger for a metered AI endpoint",
        version="0.1.0",
        lifespan=inject(lifespan),
    )

    # Middleware must be added before the app starts.
    setup_metrics(app, config)
    init_telemetry(app, config.tracing)

    app.include_router(health_router)
    app.include_router(proxy_router)
    app.include_router(quota_router)
    app.include_router(webhook_router)

    return app


app = get_app()
