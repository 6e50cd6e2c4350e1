"""Validated shapes for the payment events we consume.

Only fields the processor reads are declared; everything else in the
provider payload is ignored.  A payload that is missing a required
field fails here, before anything touches the ledger.
"""

from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .base import InvalidEvent

EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_INVOICE_PAID = "invoice.payment_succeeded"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


# ---------------------------------------------------------------------------
# checkout.session.completed
# ---------------------------------------------------------------------------


class LineItem(_Model):
    price_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    amount_total: int | None = None
    currency: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_price_id(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        if "price_id" not in out:
            price = out.get("price")
            out["price_id"] = price.get("id") if isinstance(price, dict) else price
        if out.get("quantity") is None:
            out["quantity"] = 1
        return out


class CheckoutMetadata(_Model):
    user_id: str = Field(alias="userId", min_length=1)
    user_email: str = Field(alias="userEmail", min_length=1)
    plan: str | None = None


class CheckoutSession(_Model):
    id: str = Field(min_length=1)
    mode: Literal["payment", "subscription", "setup"]
    metadata: CheckoutMetadata
    amount_total: int = 0
    currency: str = "usd"
    customer_email: str | None = None
    subscription: str | None = None
    line_items: list[LineItem] | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalise(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        if out.get("amount_total") is None:
            out["amount_total"] = 0
        if out.get("currency") is None:
            out.pop("currency", None)
        # Expanded line items arrive as a list object: {"data": [...]}.
        items = out.get("line_items")
        if isinstance(items, dict):
            out["line_items"] = items.get("data")
        return out

    def with_line_items(self, items: list[LineItem]) -> CheckoutSession:
        return self.model_copy(update={"line_items": items})


class _CheckoutData(_Model):
    object: CheckoutSession


class CheckoutCompletedEvent(_Model):
    id: str
    type: Literal["checkout.session.completed"]
    data: _CheckoutData

    @property
    def session(self) -> CheckoutSession:
        return self.data.object

    @property
    def event_key(self) -> str:
        return f"stripe_session_{self.session.id}"


# ---------------------------------------------------------------------------
# invoice.payment_succeeded
# ---------------------------------------------------------------------------


class Invoice(_Model):
    id: str = Field(min_length=1)
    subscription: str | None = None
    billing_reason: str | None = None
    user_id: str | None = None
    customer_email: str | None = None
    amount_paid: int = 0
    currency: str = "usd"

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        metadata = out.get("metadata") or {}
        # Newer API versions nest the subscription under parent.subscription_details.
        details = (out.get("parent") or {}).get("subscription_details") or {}
        if out.get("subscription") is None and details.get("subscription"):
            out["subscription"] = details["subscription"]
        user_id = metadata.get("userId") or (details.get("metadata") or {}).get("userId")
        out["user_id"] = user_id
        if out.get("amount_paid") is None:
            out["amount_paid"] = 0
        if out.get("currency") is None:
            out.pop("currency", None)
        return out


class _InvoiceData(_Model):
    object: Invoice


class InvoicePaidEvent(_Model):
    id: str
    type: Literal["invoice.payment_succeeded"]
    data: _InvoiceData

    @property
    def invoice(self) -> Invoice:
        return self.data.object

    @property
    def event_key(self) -> str:
        return f"stripe_invoice_{self.invoice.id}"


# ---------------------------------------------------------------------------
# customer.subscription.deleted
# ---------------------------------------------------------------------------


class Subscription(_Model):
    id: str = Field(min_length=1)
    status: str | None = None
    user_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if isinstance(data, dict) and "user_id" not in data:
            return {**data, "user_id": (data.get("metadata") or {}).get("userId")}
        return data


class _SubscriptionData(_Model):
    object: Subscription


class SubscriptionDeletedEvent(_Model):
    id: str
    type: Literal["customer.subscription.deleted"]
    data: _SubscriptionData

    @property
    def subscription(self) -> Subscription:
        return self.data.object

    @property
    def event_key(self) -> str:
        return f"stripe_event_{self.id}"


PaymentEvent = Union[CheckoutCompletedEvent, InvoicePaidEvent, SubscriptionDeletedEvent]

_EVENT_MODELS: dict[str, type[_Model]] = {
    EVENT_CHECKOUT_COMPLETED: CheckoutCompletedEvent,
    EVENT_INVOICE_PAID: InvoicePaidEvent,
    EVENT_SUBSCRIPTION_DELETED: SubscriptionDeletedEvent,
}


def parse_event(payload: Any) -> PaymentEvent | None:
    """Validate a verified webhook payload.

    Returns ``None`` for event types we do not handle.

    Raises:
        InvalidEvent: when a handled event type is malformed.
    """
    if not isinstance(payload, dict):
        raise InvalidEvent("Event payload must be a JSON object")
    event_type = payload.get("type")
    model = _EVENT_MODELS.get(event_type) if isinstance(event_type, str) else None
    if model is None:
        return None
    try:
        return model.model_validate(payload)  # type: ignore[return-value]
    except ValidationError as exc:
        raise InvalidEvent(
            f"Malformed {event_type} event: {exc.error_count()} validation error(s)"
        ) from exc
