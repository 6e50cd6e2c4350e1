"""Billing exceptions."""

from __future__ import annotations


class InvalidSignature(Exception):
    """Raised when a webhook signature does not verify."""


class InvalidEvent(Exception):
    """Raised when a verified payload does not have the shape we consume."""


class ValidationMismatch(Exception):
    """Raised when event metadata disagrees with the stored account.

    Fatal for the event: retrying the same payload cannot succeed.
    """


class AccountNotFound(ValidationMismatch):
    """Raised when an event or request names an account that does not exist."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Account {user_id!r} not found")
        self.user_id = user_id


class DuplicateEvent(Exception):
    """Raised when a ledger entry for this (event, price) already exists."""

    def __init__(self, event_id: str, price_id: str) -> None:
        super().__init__(f"Event {event_id!r} already recorded for price {price_id!r}")
        self.event_id = event_id
        self.price_id = price_id


class InsufficientCredits(Exception):
    """Raised when spending a credit from an empty balance."""


class EventInProgress(Exception):
    """Raised when another delivery of the same event still holds its claim.

    Not a duplicate: the holder may yet fail and release the claim, so
    the provider must be told to redeliver.
    """

    def __init__(self, event_key: str, retry_after: int) -> None:
        super().__init__(f"Event {event_key!r} is being processed by another delivery")
        self.event_key = event_key
        self.retry_after = retry_after
