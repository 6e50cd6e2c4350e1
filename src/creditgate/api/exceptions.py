"""Global exception handlers, registered as a lifespan dependency.

Every handled error becomes ``{"detail": ..., "code": ...}``.  Limit
rejections are expected traffic and are never logged as errors.
"""

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from creditgate.configs.config import ConfigurationError
from creditgate.core.billing.base import (
    AccountNotFound,
    EventInProgress,
    InsufficientCredits,
    InvalidEvent,
    InvalidSignature,
    ValidationMismatch,
)
from creditgate.core.limits.base import (
    PayloadTooLarge,
    QuotaExceeded,
    RateLimited,
    TooManyConcurrent,
)
from creditgate.core.metered.client import ModelNotAllowed
from creditgate.core.metered.retry import UpstreamError, UpstreamTimeout
from creditgate.infra.counters.base import BackendUnavailable
from creditgate.infra.lifespan import get_app

logger = logging.getLogger(__name__)

_BACKEND_RETRY_AFTER = "5"


def _error(
    status_code: int, exc: Exception, code: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "code": code},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register custom exception handlers on ``app``."""

    @app.exception_handler(RateLimited)
    async def handle_rate_limited(request: Request, exc: RateLimited) -> JSONResponse:
        return _error(429, exc, "RATE_LIMITED", exc.result.headers())

    @app.exception_handler(QuotaExceeded)
    async def handle_quota_exceeded(request: Request, exc: QuotaExceeded) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content={
                "detail": str(exc),
                "code": "QUOTA_EXCEEDED",
                "limit": exc.limit,
                "used": exc.used,
            },
        )

    @app.exception_handler(TooManyConcurrent)
    async def handle_too_many_concurrent(
        request: Request, exc: TooManyConcurrent
    ) -> JSONResponse:
        return _error(
            429, exc, "TOO_MANY_CONCURRENT", {"Retry-After": str(exc.retry_after)}
        )

    @app.exception_handler(PayloadTooLarge)
    async def handle_payload_too_large(
        request: Request, exc: PayloadTooLarge
    ) -> JSONResponse:
        return _error(413, exc, "PAYLOAD_TOO_LARGE")

    @app.exception_handler(InvalidSignature)
    async def handle_invalid_signature(
        request: Request, exc: InvalidSignature
    ) -> JSONResponse:
        logger.warning("Rejected webhook with invalid signature: %s", exc)
        return _error(400, exc, "INVALID_SIGNATURE")

    @app.exception_handler(InvalidEvent)
    async def handle_invalid_event(request: Request, exc: InvalidEvent) -> JSONResponse:
        logger.warning("Rejected malformed event: %s", exc)
        return _error(400, exc, "INVALID_EVENT")

    @app.exception_handler(ValidationMismatch)
    async def handle_validation_mismatch(
        request: Request, exc: ValidationMismatch
    ) -> JSONResponse:
        logger.error("Event failed validation against stored account: %s", exc)
        code = "ACCOUNT_NOT_FOUND" if isinstance(exc, AccountNotFound) else "VALIDATION_MISMATCH"
        return _error(400, exc, code)

    @app.exception_handler(EventInProgress)
    async def handle_event_in_progress(
        request: Request, exc: EventInProgress
    ) -> JSONResponse:
        return _error(
            409, exc, "EVENT_IN_PROGRESS", {"Retry-After": str(exc.retry_after)}
        )

    @app.exception_handler(InsufficientCredits)
    async def handle_insufficient_credits(
        request: Request, exc: InsufficientCredits
    ) -> JSONResponse:
        return _error(402, exc, "INSUFFICIENT_CREDITS")

    @app.exception_handler(ModelNotAllowed)
    async def handle_model_not_allowed(
        request: Request, exc: ModelNotAllowed
    ) -> JSONResponse:
        return _error(400, exc, "MODEL_NOT_ALLOWED")

    @app.exception_handler(UpstreamTimeout)
    async def handle_upstream_timeout(
        request: Request, exc: UpstreamTimeout
    ) -> JSONResponse:
        logger.error("Upstream timeout: %s", exc)
        return _error(504, exc, "UPSTREAM_TIMEOUT")

    @app.exception_handler(UpstreamError)
    async def handle_upstream_error(request: Request, exc: UpstreamError) -> JSONResponse:
        logger.error("Upstream error: %s", exc)
        return JSONResponse(
            status_code=502,
            content={"detail": "AI service temporarily unavailable", "code": "AI_ERROR"},
        )

    @app.exception_handler(BackendUnavailable)
    async def handle_backend_unavailable(
        request: Request, exc: BackendUnavailable
    ) -> JSONResponse:
        logger.error("%s backend unavailable: %s", exc.backend, exc)
        return _error(
            503, exc, "BACKEND_UNAVAILABLE", {"Retry-After": _BACKEND_RETRY_AFTER}
        )

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        logger.error("Configuration error: %s", exc)
        return _error(501, exc, "CONFIGURATION_ERROR")


async def build_exception_handlers(
    app: Annotated[FastAPI, Depends(get_app)],
) -> AsyncGenerator[None, None]:
    register_exception_handlers(app)
    yield
