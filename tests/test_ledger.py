"""Tests for the credit ledger on SQLite."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from creditgate.core.billing.base import (
    AccountNotFound,
    DuplicateEvent,
    InsufficientCredits,
    ValidationMismatch,
)
from creditgate.infra.db import CreditTransaction, TransactionMeta


def _make_meta(event_id: str = "cs_1", price_id: str = "price_100", **kwargs) -> TransactionMeta:
    return TransactionMeta(
        transaction_type=kwargs.pop("transaction_type", "purchase"),
        external_event_id=event_id,
        price_id=price_id,
        **kwargs,
    )


async def _transaction_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(CreditTransaction))


class TestApplyCredit:
    @pytest.mark.asyncio
    async def test_balance_accumulates(self, ledger, add_account):
        await add_account()
        assert await ledger.apply_credit("user-1", "a@example.com", 100, _make_meta("cs_1")) == 100
        assert await ledger.apply_credit("user-1", "a@example.com", 50, _make_meta("cs_2")) == 150

    @pytest.mark.asyncio
    async def test_redelivery_is_rejected_without_change(
        self, ledger, add_account, session_factory
    ):
        await add_account()
        await ledger.apply_credit("user-1", "a@example.com", 100, _make_meta("cs_1"))
        await ledger.apply_credit("user-1", "a@example.com", 50, _make_meta("cs_2"))

        with pytest.raises(DuplicateEvent) as exc_info:
            await ledger.apply_credit("user-1", "a@example.com", 100, _make_meta("cs_1"))
        assert exc_info.value.event_id == "cs_1"

        account = await ledger.get_account("user-1")
        assert account.credits_balance == 150
        assert await _transaction_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_same_event_different_prices_both_apply(self, ledger, add_account):
        await add_account()
        await ledger.apply_credit("user-1", None, 100, _make_meta("cs_1", "price_100"))
        balance = await ledger.apply_credit("user-1", None, 500, _make_meta("cs_1", "price_500"))
        assert balance == 600

    @pytest.mark.asyncio
    async def test_concurrent_distinct_events_all_count(self, ledger, add_account):
        await add_account()
        await asyncio.gather(
            *(
                ledger.apply_credit("user-1", None, 10, _make_meta(f"cs_{i}"))
                for i in range(10)
            )
        )
        assert (await ledger.get_account("user-1")).credits_balance == 100

    @pytest.mark.asyncio
    async def test_concurrent_same_event_applies_once(self, ledger, add_account):
        await add_account()
        results = await asyncio.gather(
            *(
                ledger.apply_credit("user-1", None, 100, _make_meta("cs_same"))
                for _ in range(5)
            ),
            return_exceptions=True,
        )
        assert sum(isinstance(r, DuplicateEvent) for r in results) == 4
        assert (await ledger.get_account("user-1")).credits_balance == 100

    @pytest.mark.asyncio
    async def test_email_compared_case_insensitively(self, ledger, add_account):
        await add_account(email="Alice@Example.com")
        balance = await ledger.apply_credit("user-1", " alice@example.COM ", 5, _make_meta())
        assert balance == 5

    @pytest.mark.asyncio
    async def test_email_mismatch(self, ledger, add_account, session_factory):
        await add_account()
        with pytest.raises(ValidationMismatch):
            await ledger.apply_credit("user-1", "mallory@example.com", 100, _make_meta())
        assert (await ledger.get_account("user-1")).credits_balance == 0
        assert await _transaction_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger):
        with pytest.raises(AccountNotFound):
            await ledger.apply_credit("ghost", None, 100, _make_meta())

    @pytest.mark.asyncio
    async def test_negative_delta_refused(self, ledger, add_account):
        await add_account()
        with pytest.raises(ValueError):
            await ledger.apply_credit("user-1", None, -1, _make_meta())

    @pytest.mark.asyncio
    async def test_subscription_plan_activates(self, ledger, add_account):
        await add_account()
        meta = _make_meta(
            "cs_sub",
            "price_sub",
            transaction_type="subscription_renewal",
            subscription_plan="pro",
        )
        await ledger.apply_credit("user-1", None, 0, meta)
        account = await ledger.get_account("user-1")
        assert account.subscription_plan == "pro"
        assert account.subscription_status == "active"
        assert account.plan_type == "subscription"


class TestConsumeCredit:
    @pytest.mark.asyncio
    async def test_decrements(self, ledger, add_account):
        await add_account(credits=2)
        assert await ledger.consume_credit("user-1") == 1
        assert await ledger.consume_credit("user-1") == 0

    @pytest.mark.asyncio
    async def test_empty_balance(self, ledger, add_account):
        await add_account(credits=0)
        with pytest.raises(InsufficientCredits):
            await ledger.consume_credit("user-1")

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger):
        with pytest.raises(AccountNotFound):
            await ledger.consume_credit("ghost")

    @pytest.mark.asyncio
    async def test_concurrent_spend_never_goes_negative(self, ledger, add_account):
        await add_account(credits=3)
        results = await asyncio.gather(
            *(ledger.consume_credit("user-1") for _ in range(6)),
            return_exceptions=True,
        )
        assert sum(isinstance(r, InsufficientCredits) for r in results) == 3
        assert (await ledger.get_account("user-1")).credits_balance == 0


class TestAccountState:
    @pytest.mark.asyncio
    async def test_plan_type_derivation(self, ledger, add_account):
        await add_account("free-user")
        await add_account("credit-user", credits=5, subscription_status="active")
        await add_account("sub-user", subscription_status="active")
        await add_account("lapsed-user", subscription_status="canceled")

        assert (await ledger.get_account("free-user")).plan_type == "free"
        assert (await ledger.get_account("credit-user")).plan_type == "credits"
        assert (await ledger.get_account("sub-user")).plan_type == "subscription"
        assert (await ledger.get_account("lapsed-user")).plan_type == "free"

    @pytest.mark.asyncio
    async def test_get_unknown_account(self, ledger):
        assert await ledger.get_account("ghost") is None

    @pytest.mark.asyncio
    async def test_set_subscription(self, ledger, add_account):
        await add_account(subscription_status="active")
        assert await ledger.set_subscription("user-1", "canceled")
        assert (await ledger.get_account("user-1")).subscription_status == "canceled"
        assert not await ledger.set_subscription("ghost", "canceled")
