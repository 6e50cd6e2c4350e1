"""Tests for payment event validation."""

from __future__ import annotations

import pytest

from creditgate.core.billing.base import InvalidEvent
from creditgate.core.billing.events import (
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    SubscriptionDeletedEvent,
    parse_event,
)


def _make_checkout(**session) -> dict:
    obj = {
        "id": "cs_test_1",
        "mode": "payment",
        "amount_total": 500,
        "currency": "usd",
        "metadata": {"userId": "user-1", "userEmail": "a@example.com"},
    }
    obj.update(session)
    return {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": obj}}


class TestCheckoutCompleted:
    def test_parses_expanded_line_items(self):
        event = parse_event(
            _make_checkout(
                line_items={
                    "object": "list",
                    "data": [
                        {"price": {"id": "price_a"}, "quantity": 2, "amount_total": 1000},
                        {"price": {"id": "price_b"}, "quantity": None},
                    ],
                }
            )
        )
        assert isinstance(event, CheckoutCompletedEvent)
        assert event.event_key == "stripe_session_cs_test_1"
        items = event.session.line_items
        assert [(i.price_id, i.quantity) for i in items] == [("price_a", 2), ("price_b", 1)]
        assert event.session.metadata.user_id == "user-1"

    def test_line_items_absent_until_fetched(self):
        event = parse_event(_make_checkout())
        assert event.session.line_items is None

    def test_null_amount_and_currency_default(self):
        event = parse_event(_make_checkout(amount_total=None, currency=None))
        assert event.session.amount_total == 0
        assert event.session.currency == "usd"

    def test_missing_user_metadata(self):
        with pytest.raises(InvalidEvent, match="checkout.session.completed"):
            parse_event(_make_checkout(metadata={"userEmail": "a@example.com"}))

    def test_unknown_mode(self):
        with pytest.raises(InvalidEvent):
            parse_event(_make_checkout(mode="donation"))


class TestInvoicePaid:
    def test_reads_nested_subscription_details(self):
        event = parse_event(
            {
                "id": "evt_2",
                "type": "invoice.payment_succeeded",
                "data": {
                    "object": {
                        "id": "in_1",
                        "billing_reason": "subscription_cycle",
                        "amount_paid": 999,
                        "parent": {
                            "subscription_details": {
                                "subscription": "sub_1",
                                "metadata": {"userId": "user-1"},
                            }
                        },
                    }
                },
            }
        )
        assert isinstance(event, InvoicePaidEvent)
        assert event.invoice.subscription == "sub_1"
        assert event.invoice.user_id == "user-1"
        assert event.event_key == "stripe_invoice_in_1"

    def test_top_level_metadata(self):
        event = parse_event(
            {
                "id": "evt_2",
                "type": "invoice.payment_succeeded",
                "data": {
                    "object": {
                        "id": "in_1",
                        "subscription": "sub_1",
                        "metadata": {"userId": "user-9"},
                    }
                },
            }
        )
        assert event.invoice.user_id == "user-9"
        assert event.invoice.amount_paid == 0


class TestSubscriptionDeleted:
    def test_keyed_by_event_id(self):
        event = parse_event(
            {
                "id": "evt_3",
                "type": "customer.subscription.deleted",
                "data": {"object": {"id": "sub_1", "metadata": {"userId": "user-1"}}},
            }
        )
        assert isinstance(event, SubscriptionDeletedEvent)
        assert event.subscription.user_id == "user-1"
        assert event.event_key == "stripe_event_evt_3"


class TestDispatch:
    def test_unhandled_type_returns_none(self):
        assert parse_event({"id": "evt_4", "type": "customer.created", "data": {}}) is None

    def test_missing_type_returns_none(self):
        assert parse_event({"id": "evt_4"}) is None

    def test_non_object_payload(self):
        with pytest.raises(InvalidEvent):
            parse_event(["not", "an", "object"])

    def test_missing_data(self):
        with pytest.raises(InvalidEvent):
            parse_event({"id": "evt_5", "type": "invoice.payment_succeeded"})
