"""Tests for exactly-once webhook processing against a real SQLite ledger."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from creditgate.configs.system import PriceConfig
from creditgate.core.billing.base import EventInProgress, ValidationMismatch
from creditgate.core.billing.events import parse_event
from creditgate.core.billing.plans import PriceCatalog
from creditgate.core.billing.processor import WebhookOutcome, WebhookProcessor
from creditgate.infra.counters import BackendUnavailable

# =========================================================================
# Helpers
# =========================================================================

_PRICES = {
    "price_100": PriceConfig(kind="credits", credits=100, name="100 Credits"),
    "price_50": PriceConfig(kind="credits", credits=50, name="50 Credits"),
    "price_pro": PriceConfig(kind="subscription", credits=300, plan="pro", name="Pro"),
}


class _RecordingInvoices:
    def __init__(self) -> None:
        self.submitted = []

    def submit(self, invoice) -> None:
        self.submitted.append(invoice)


class _UnreachableLedger:
    async def apply_credit(self, *args, **kwargs):
        raise BackendUnavailable("database down", backend="sql")


class _SlowFailingLedger:
    """Holds the claim for a while, then fails."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()

    async def apply_credit(self, *args, **kwargs):
        self.entered.set()
        await asyncio.sleep(0.2)
        raise BackendUnavailable("database down", backend="sql")


def _make_processor(idempotency, ledger, invoices=None) -> WebhookProcessor:
    return WebhookProcessor(
        idempotency=idempotency,
        ledger=ledger,
        catalog=PriceCatalog(_PRICES),
        invoices=invoices or _RecordingInvoices(),
        claim_ttl=timedelta(minutes=15),
        renewal_credits=300,
    )


def _checkout(session_id="cs_1", mode="payment", items=(("price_100", 1),), email="a@example.com"):
    return parse_event(
        {
            "id": f"evt_{session_id}",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": session_id,
                    "mode": mode,
                    "amount_total": 999,
                    "currency": "eur",
                    "metadata": {"userId": "user-1", "userEmail": email},
                    "line_items": {
                        "data": [{"price": {"id": p}, "quantity": q} for p, q in items]
                    },
                }
            },
        }
    )


def _invoice(invoice_id="in_1", reason="subscription_cycle", user_id="user-1"):
    metadata = {"userId": user_id} if user_id else {}
    return parse_event(
        {
            "id": f"evt_{invoice_id}",
            "type": "invoice.payment_succeeded",
            "data": {
                "object": {
                    "id": invoice_id,
                    "subscription": "sub_1",
                    "billing_reason": reason,
                    "amount_paid": 1500,
                    "metadata": metadata,
                }
            },
        }
    )


def _subscription_deleted(event_id="evt_del", user_id="user-1"):
    return parse_event(
        {
            "id": event_id,
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_1", "metadata": {"userId": user_id}}},
        }
    )


# =========================================================================
# checkout.session.completed
# =========================================================================


class TestCheckout:
    @pytest.mark.asyncio
    async def test_purchase_then_redelivery(self, idempotency, ledger, add_account):
        await add_account()
        invoices = _RecordingInvoices()
        processor = _make_processor(idempotency, ledger, invoices)

        first = await processor.process(_checkout("cs_1", items=[("price_100", 1)]))
        assert first.status == "processed"
        assert first.credits_added == 100
        second = await processor.process(_checkout("cs_2", items=[("price_50", 1)]))
        assert second.balance == 150

        again = await processor.process(_checkout("cs_1", items=[("price_100", 1)]))
        assert again.status == "duplicate"
        assert (await ledger.get_account("user-1")).credits_balance == 150
        assert len(invoices.submitted) == 2
        assert invoices.submitted[0].currency == "eur"

    @pytest.mark.asyncio
    async def test_quantity_multiplies_credits(self, idempotency, ledger, add_account):
        await add_account()
        processor = _make_processor(idempotency, ledger)
        outcome = await processor.process(_checkout(items=[("price_50", 3), ("price_100", 1)]))
        assert outcome.credits_added == 250
        assert outcome.balance == 250

    @pytest.mark.asyncio
    async def test_unknown_price_skipped(self, idempotency, ledger, add_account):
        await add_account()
        processor = _make_processor(idempotency, ledger)
        outcome = await processor.process(_checkout(items=[("price_mystery", 1)]))
        assert outcome.status == "processed"
        assert outcome.credits_added == 0

    @pytest.mark.asyncio
    async def test_subscription_checkout_activates_plan(
        self, idempotency, ledger, add_account
    ):
        await add_account()
        processor = _make_processor(idempotency, ledger)
        outcome = await processor.process(
            _checkout(mode="subscription", items=[("price_pro", 1)])
        )
        assert outcome.credits_added == 300
        account = await ledger.get_account("user-1")
        assert account.subscription_plan == "pro"
        assert account.subscription_status == "active"

    @pytest.mark.asyncio
    async def test_setup_mode_ignored(self, idempotency, ledger, add_account):
        await add_account()
        processor = _make_processor(idempotency, ledger)
        outcome = await processor.process(_checkout(mode="setup"))
        assert outcome.status == "ignored"
        assert await idempotency.status(outcome.event_key) == "completed"

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_apply_once(self, idempotency, ledger, add_account):
        await add_account()
        processor = _make_processor(idempotency, ledger)
        results = await asyncio.gather(
            *(processor.process(_checkout("cs_race")) for _ in range(5)),
            return_exceptions=True,
        )
        processed = [
            r for r in results if isinstance(r, WebhookOutcome) and r.status == "processed"
        ]
        assert len(processed) == 1
        for result in results:
            if result is processed[0]:
                continue
            assert isinstance(result, EventInProgress) or result.status == "duplicate"
        assert (await ledger.get_account("user-1")).credits_balance == 100


# =========================================================================
# Failures release the claim
# =========================================================================


class TestFailure:
    @pytest.mark.asyncio
    async def test_backend_failure_marks_failed_and_retry_succeeds(
        self, idempotency, ledger, add_account
    ):
        await add_account()
        broken = _make_processor(idempotency, _UnreachableLedger())
        with pytest.raises(BackendUnavailable):
            await broken.process(_checkout("cs_1"))
        assert await idempotency.status("stripe_session_cs_1") == "failed"

        outcome = await _make_processor(idempotency, ledger).process(_checkout("cs_1"))
        assert outcome.status == "processed"
        assert (await ledger.get_account("user-1")).credits_balance == 100

    @pytest.mark.asyncio
    async def test_delivery_during_failing_attempt_is_not_acknowledged(
        self, idempotency, ledger, add_account
    ):
        await add_account()
        slow = _SlowFailingLedger()
        first = asyncio.create_task(
            _make_processor(idempotency, slow).process(_checkout("cs_1"))
        )
        await slow.entered.wait()

        processor = _make_processor(idempotency, ledger)
        with pytest.raises(EventInProgress) as excinfo:
            await processor.process(_checkout("cs_1"))
        assert excinfo.value.event_key == "stripe_session_cs_1"
        assert excinfo.value.retry_after > 0

        with pytest.raises(BackendUnavailable):
            await first
        assert await idempotency.status("stripe_session_cs_1") == "failed"

        outcome = await processor.process(_checkout("cs_1"))
        assert outcome.status == "processed"
        assert (await ledger.get_account("user-1")).credits_balance == 100

    @pytest.mark.asyncio
    async def test_email_mismatch_propagates(self, idempotency, ledger, add_account):
        await add_account()
        processor = _make_processor(idempotency, ledger)
        with pytest.raises(ValidationMismatch):
            await processor.process(_checkout(email="mallory@example.com"))
        assert await idempotency.status("stripe_session_cs_1") == "failed"
        assert (await ledger.get_account("user-1")).credits_balance == 0


# =========================================================================
# Subscription lifecycle
# =========================================================================


class TestSubscriptionEvents:
    @pytest.mark.asyncio
    async def test_renewal_adds_credits_once(self, idempotency, ledger, add_account):
        await add_account(subscription_status="active")
        processor = _make_processor(idempotency, ledger)
        outcome = await processor.process(_invoice("in_1"))
        assert outcome.status == "processed"
        assert outcome.balance == 300
        assert (await processor.process(_invoice("in_1"))).status == "duplicate"
        assert (await ledger.get_account("user-1")).credits_balance == 300

    @pytest.mark.asyncio
    async def test_initial_invoice_ignored(self, idempotency, ledger, add_account):
        await add_account()
        processor = _make_processor(idempotency, ledger)
        outcome = await processor.process(_invoice(reason="subscription_create"))
        assert outcome.status == "ignored"
        assert (await ledger.get_account("user-1")).credits_balance == 0

    @pytest.mark.asyncio
    async def test_invoice_without_user_ignored(self, idempotency, ledger):
        processor = _make_processor(idempotency, ledger)
        outcome = await processor.process(_invoice(user_id=None))
        assert outcome.status == "ignored"

    @pytest.mark.asyncio
    async def test_deletion_cancels(self, idempotency, ledger, add_account):
        await add_account(subscription_status="active")
        processor = _make_processor(idempotency, ledger)
        outcome = await processor.process(_subscription_deleted())
        assert outcome.status == "processed"
        account = await ledger.get_account("user-1")
        assert account.subscription_status == "canceled"
        assert account.plan_type == "free"

    @pytest.mark.asyncio
    async def test_deletion_for_unknown_account_ignored(self, idempotency, ledger):
        processor = _make_processor(idempotency, ledger)
        outcome = await processor.process(_subscription_deleted(user_id="ghost"))
        assert outcome.status == "ignored"
