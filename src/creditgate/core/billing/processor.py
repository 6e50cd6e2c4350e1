"""Turns verified payment events into exactly-once ledger mutations.

Flow per event::

    claim(event_key) --completed--> duplicate (no mutation)
         |         --processing--> EventInProgress (provider redelivers)
         |
      claimed
         |
    apply line items --error--> mark_failed, re-raise
         |
    mark_completed -> submit invoices
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Annotated, Literal

from fastapi import Depends, FastAPI, Request
from opentelemetry import trace

from creditgate.configs.config import AppConfig, get_app_config
from creditgate.core.metrics import WEBHOOK_EVENTS_TOTAL
from creditgate.infra.db.deps import build_ledger
from creditgate.infra.db.idempotency import IdempotencyCache
from creditgate.infra.db.ledger import CreditLedger, TransactionMeta
from creditgate.infra.db.models import (
    STATUS_COMPLETED,
    TRANSACTION_PURCHASE,
    TRANSACTION_SUBSCRIPTION_RENEWAL,
)
from creditgate.infra.lifespan import get_app
from creditgate.infra.telemetry import (
    ATTR_WEBHOOK_EVENT_KEY,
    ATTR_WEBHOOK_EVENT_TYPE,
    ATTR_WEBHOOK_OUTCOME,
    SPAN_WEBHOOK_PROCESS,
    tracer,
)

from .base import DuplicateEvent, EventInProgress, InvalidEvent
from .events import (
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    PaymentEvent,
    SubscriptionDeletedEvent,
)
from .invoices import InvoiceDispatcher, InvoiceRequest, build_invoice_dispatcher
from .plans import (
    PRICE_KIND_CREDITS,
    PRICE_KIND_SUBSCRIPTION,
    SUBSCRIPTION_CANCELED,
    PriceCatalog,
)

logger = logging.getLogger(__name__)

RENEWAL_PRICE_ID = "subscription_renewal"
_INITIAL_INVOICE_REASON = "subscription_create"
_IN_PROGRESS_RETRY_AFTER = 30

Outcome = Literal["processed", "duplicate", "ignored"]


@dataclass
class WebhookOutcome:
    status: Outcome
    event_type: str
    event_key: str
    credits_added: int = 0
    balance: int | None = None


@dataclass
class _Applied:
    credits: int = 0
    balance: int | None = None
    invoices: list[InvoiceRequest] = field(default_factory=list)
    ignored: bool = False


class WebhookProcessor:
    def __init__(
        self,
        *,
        idempotency: IdempotencyCache,
        ledger: CreditLedger,
        catalog: PriceCatalog,
        invoices: InvoiceDispatcher,
        claim_ttl: timedelta,
        renewal_credits: int,
    ) -> None:
        self._idempotency = idempotency
        self._ledger = ledger
        self._catalog = catalog
        self._invoices = invoices
        self._claim_ttl = claim_ttl
        self._renewal_credits = renewal_credits

    async def process(self, event: PaymentEvent) -> WebhookOutcome:
        """Apply *event* at most once across all deliveries and replicas.

        Any failure after the claim releases it (``failed``) and
        propagates, so the provider's retry starts from scratch.
        """
        key = event.event_key
        with tracer.start_as_current_span(SPAN_WEBHOOK_PROCESS) as span:
            span.set_attribute(ATTR_WEBHOOK_EVENT_TYPE, event.type)
            span.set_attribute(ATTR_WEBHOOK_EVENT_KEY, key)

            claim = await self._idempotency.claim(key, self._claim_ttl)
            if not claim.claimed:
                if claim.status == STATUS_COMPLETED:
                    logger.info("Skipping %s: already completed", key)
                    return self._finish(span, WebhookOutcome("duplicate", event.type, key))
                # Only a completed claim may be acknowledged.
                span.set_attribute(ATTR_WEBHOOK_OUTCOME, "in_progress")
                WEBHOOK_EVENTS_TOTAL.labels(event_type=event.type, outcome="in_progress").inc()
                logger.info("Deferring %s: claim is %s", key, claim.status)
                raise EventInProgress(key, _IN_PROGRESS_RETRY_AFTER)

            try:
                applied = await self._dispatch(event)
                await self._idempotency.mark_completed(key)
            except BaseException as exc:
                WEBHOOK_EVENTS_TOTAL.labels(event_type=event.type, outcome="error").inc()
                logger.warning("Processing %s failed, releasing claim: %r", key, exc)
                await asyncio.shield(self._idempotency.mark_failed(key, repr(exc)))
                raise

            for invoice in applied.invoices:
                self._invoices.submit(invoice)

            status: Outcome = "ignored" if applied.ignored else "processed"
            return self._finish(
                span,
                WebhookOutcome(status, event.type, key, applied.credits, applied.balance),
            )

    def _finish(self, span: trace.Span, outcome: WebhookOutcome) -> WebhookOutcome:
        span.set_attribute(ATTR_WEBHOOK_OUTCOME, outcome.status)
        WEBHOOK_EVENTS_TOTAL.labels(
            event_type=outcome.event_type, outcome=outcome.status
        ).inc()
        return outcome

    async def _dispatch(self, event: PaymentEvent) -> _Applied:
        if isinstance(event, CheckoutCompletedEvent):
            return await self._checkout_completed(event)
        if isinstance(event, InvoicePaidEvent):
            return await self._invoice_paid(event)
        if isinstance(event, SubscriptionDeletedEvent):
            return await self._subscription_deleted(event)
        raise InvalidEvent(f"Unsupported event {type(event).__name__}")

    # -----------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------

    async def _checkout_completed(self, event: CheckoutCompletedEvent) -> _Applied:
        session = event.session
        if session.line_items is None:
            raise InvalidEvent(f"Checkout session {session.id} has no line items")

        user = session.metadata
        kind = {
            "payment": PRICE_KIND_CREDITS,
            "subscription": PRICE_KIND_SUBSCRIPTION,
        }.get(session.mode)
        applied = _Applied(ignored=kind is None)
        if kind is None:
            logger.info("Checkout %s in %s mode carries no credits", session.id, session.mode)
            return applied

        for item in session.line_items:
            price = self._catalog.credits_for(item.price_id, kind)
            if price is None:
                logger.warning(
                    "Checkout %s: unknown %s price %s, skipped",
                    session.id,
                    kind,
                    item.price_id,
                )
                continue

            if kind == PRICE_KIND_CREDITS:
                credits = price.credits * item.quantity
                transaction_type = TRANSACTION_PURCHASE
                subscription_plan = None
            else:
                credits = price.credits
                transaction_type = TRANSACTION_SUBSCRIPTION_RENEWAL
                subscription_plan = price.plan or item.price_id

            amount = item.amount_total if item.amount_total is not None else session.amount_total
            currency = item.currency or session.currency
            try:
                applied.balance = await self._ledger.apply_credit(
                    user.user_id,
                    user.user_email,
                    credits,
                    TransactionMeta(
                        transaction_type=transaction_type,
                        external_event_id=session.id,
                        price_id=item.price_id,
                        amount_paid=amount,
                        currency=currency,
                        plan_name=price.name or None,
                        subscription_plan=subscription_plan,
                    ),
                )
            except DuplicateEvent:
                logger.info(
                    "Checkout %s price %s already recorded", session.id, item.price_id
                )
                continue

            applied.credits += credits
            applied.invoices.append(
                InvoiceRequest(
                    user_id=user.user_id,
                    email=user.user_email,
                    event_key=event.event_key,
                    amount=amount,
                    currency=currency,
                    credits=credits,
                    plan_name=price.name,
                    transaction_type=transaction_type,
                )
            )
        return applied

    async def _invoice_paid(self, event: InvoicePaidEvent) -> _Applied:
        invoice = event.invoice
        if invoice.subscription is None:
            return _Applied(ignored=True)
        if invoice.billing_reason == _INITIAL_INVOICE_REASON:
            # The checkout session already granted the first period's credits.
            return _Applied(ignored=True)
        if not invoice.user_id:
            logger.error("Invoice %s has no userId in metadata, skipped", invoice.id)
            return _Applied(ignored=True)

        applied = _Applied()
        try:
            applied.balance = await self._ledger.apply_credit(
                invoice.user_id,
                None,
                self._renewal_credits,
                TransactionMeta(
                    transaction_type=TRANSACTION_SUBSCRIPTION_RENEWAL,
                    external_event_id=invoice.id,
                    price_id=RENEWAL_PRICE_ID,
                    amount_paid=invoice.amount_paid,
                    currency=invoice.currency,
                    plan_name="Subscription renewal",
                ),
            )
        except DuplicateEvent:
            logger.info("Renewal for invoice %s already recorded", invoice.id)
            return applied

        applied.credits = self._renewal_credits
        applied.invoices.append(
            InvoiceRequest(
                user_id=invoice.user_id,
                email=invoice.customer_email or "",
                event_key=event.event_key,
                amount=invoice.amount_paid,
                currency=invoice.currency,
                credits=self._renewal_credits,
                plan_name="Subscription renewal",
                transaction_type=TRANSACTION_SUBSCRIPTION_RENEWAL,
            )
        )
        return applied

    async def _subscription_deleted(self, event: SubscriptionDeletedEvent) -> _Applied:
        subscription = event.subscription
        if not subscription.user_id:
            logger.error("Subscription %s has no userId in metadata, skipped", subscription.id)
            return _Applied(ignored=True)
        found = await self._ledger.set_subscription(
            subscription.user_id, SUBSCRIPTION_CANCELED
        )
        if not found:
            logger.warning(
                "Subscription %s canceled for unknown account %s",
                subscription.id,
                subscription.user_id,
            )
            return _Applied(ignored=True)
        logger.info("Subscription %s canceled for %s", subscription.id, subscription.user_id)
        return _Applied()


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_webhook_processor(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
    _ledger: Annotated[None, Depends(build_ledger)],
    _invoices: Annotated[None, Depends(build_invoice_dispatcher)],
) -> AsyncGenerator[None, None]:
    app.state.webhook_processor = WebhookProcessor(
        idempotency=app.state.idempotency_cache,
        ledger=app.state.credit_ledger,
        catalog=PriceCatalog(config.billing.prices),
        invoices=app.state.invoice_dispatcher,
        claim_ttl=config.idempotency.claim_ttl,
        renewal_credits=config.billing.renewal_credits,
    )
    yield


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor
