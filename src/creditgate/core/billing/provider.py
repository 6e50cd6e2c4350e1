"""Stripe collaborator: webhook signature checks and line-item lookups."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from typing import Annotated, Any

import stripe
from fastapi import Depends, FastAPI, Request

from creditgate.configs.config import AppConfig, ConfigurationError, get_app_config
from creditgate.configs.system import BillingConfig
from creditgate.infra.counters.base import BackendUnavailable
from creditgate.infra.lifespan import get_app

from .base import InvalidEvent, InvalidSignature
from .events import CheckoutCompletedEvent, LineItem, PaymentEvent, parse_event

logger = logging.getLogger(__name__)

_LINE_ITEM_PAGE = 100


def _fetch_all_line_items(session_id: str, api_key: str) -> list[Any]:
    """Blocking: every line item of a session, following ``has_more``."""
    page = stripe.checkout.Session.list_line_items(
        session_id, api_key=api_key, limit=_LINE_ITEM_PAGE
    )
    return list(page.auto_paging_iter())


class StripeGateway:
    def __init__(self, config: BillingConfig) -> None:
        self._config = config

    def verify(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Check the ``stripe-signature`` header and decode the payload.

        Raises:
            ConfigurationError: no webhook secret configured.
            InvalidSignature: missing, stale or wrong signature.
            InvalidEvent: the signed payload is not a JSON object.
        """
        secret = self._config.stripe_webhook_secret
        if not secret:
            raise ConfigurationError("Stripe webhook not configured")
        if not signature:
            raise InvalidSignature("Missing stripe-signature header")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text, signature, secret, self._config.signature_tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise InvalidSignature(f"Invalid signature: {exc}") from exc
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise InvalidEvent("Event payload is not valid JSON") from exc
        if not isinstance(decoded, dict):
            raise InvalidEvent("Event payload must be a JSON object")
        return decoded

    async def list_line_items(self, session_id: str) -> list[LineItem]:
        """Fetch a checkout session's line items from the Stripe API."""
        api_key = self._config.stripe_secret_key
        if not api_key:
            raise ConfigurationError("Stripe not configured")
        try:
            raw_items = await asyncio.to_thread(_fetch_all_line_items, session_id, api_key)
        except stripe.StripeError as exc:
            raise BackendUnavailable(
                f"Line items for {session_id} unavailable: {exc}", backend="stripe"
            ) from exc

        items: list[LineItem] = []
        for raw in raw_items:
            price = getattr(raw, "price", None)
            if price is None or not getattr(price, "id", None):
                logger.warning("Line item without a price in %s, skipped", session_id)
                continue
            items.append(
                LineItem(
                    price_id=price.id,
                    quantity=raw.quantity,
                    amount_total=raw.amount_total,
                    currency=raw.currency,
                )
            )
        return items

    async def parse(self, payload: bytes, signature: str | None) -> PaymentEvent | None:
        """Verify, validate and complete an incoming event.

        Returns ``None`` for event types that are not handled.
        """
        event = parse_event(self.verify(payload, signature))
        if isinstance(event, CheckoutCompletedEvent) and event.session.line_items is None:
            items = await self.list_line_items(event.session.id)
            session = event.session.with_line_items(items)
            event = event.model_copy(
                update={"data": event.data.model_copy(update={"object": session})}
            )
        return event


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_stripe_gateway(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[None, None]:
    billing = config.billing
    if not billing.stripe_webhook_secret:
        logger.warning("billing.stripe_webhook_secret is empty; webhooks will answer 501")
    app.state.stripe_gateway = StripeGateway(billing)
    yield


def get_stripe_gateway(request: Request) -> StripeGateway:
    return request.app.state.stripe_gateway
