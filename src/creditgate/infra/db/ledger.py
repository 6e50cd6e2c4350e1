"""Credit ledger -- the only code that changes ``accounts.credits_balance``.

Every credit is written as a ``credit_transactions`` row and a balance
increment in the same transaction.  The balance update is a single
``UPDATE ... SET credits_balance = credits_balance + :delta`` so two
distinct events for one user serialise on the row lock instead of
racing through read-modify-write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from creditgate.core.billing.base import (
    AccountNotFound,
    DuplicateEvent,
    InsufficientCredits,
    ValidationMismatch,
)
from creditgate.core.billing.plans import SUBSCRIPTION_ACTIVE, PlanType, derive_plan_type
from creditgate.core.metrics import CREDITS_APPLIED_TOTAL, CREDITS_CONSUMED_TOTAL
from creditgate.infra.db_engine import translate_db_errors
from creditgate.infra.telemetry import (
    ATTR_LEDGER_DELTA,
    ATTR_LEDGER_TRANSACTION_TYPE,
    SPAN_LEDGER_APPLY,
    SPAN_LEDGER_CONSUME,
    tracer,
)

from .models import Account, CreditTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionMeta:
    """Provenance recorded with each ledger entry."""

    transaction_type: str
    external_event_id: str
    price_id: str
    amount_paid: int = 0
    currency: str = "usd"
    plan_name: str | None = None
    # When set, the same transaction marks this subscription plan active.
    subscription_plan: str | None = None


@dataclass(frozen=True)
class AccountSnapshot:
    user_id: str
    email: str
    credits_balance: int
    subscription_plan: str | None
    subscription_status: str | None

    @property
    def plan_type(self) -> PlanType:
        return derive_plan_type(self.credits_balance, self.subscription_status)


def _same_email(stored: str, claimed: str) -> bool:
    return stored.strip().lower() == claimed.strip().lower()


class CreditLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def apply_credit(
        self,
        user_id: str,
        user_email: str | None,
        delta: int,
        meta: TransactionMeta,
    ) -> int:
        """Record *delta* credits for *user_id* and return the new balance.

        *user_email* must match the stored account email (case and
        surrounding whitespace ignored); ``None`` skips the comparison for
        events that carry no email, such as subscription renewals.

        Raises:
            AccountNotFound: no such account.
            ValidationMismatch: the email does not match.
            DuplicateEvent: this (event, price) pair is already recorded;
                nothing was changed.
            BackendUnavailable: the database could not be reached.
        """
        if delta < 0:
            raise ValueError("apply_credit only adds credits")

        with tracer.start_as_current_span(SPAN_LEDGER_APPLY) as span:
            span.set_attribute(ATTR_LEDGER_DELTA, delta)
            span.set_attribute(ATTR_LEDGER_TRANSACTION_TYPE, meta.transaction_type)

            async with translate_db_errors("apply_credit"):
                async with self._session_factory() as session, session.begin():
                    stored_email = await session.scalar(
                        select(Account.email).where(Account.id == user_id)
                    )
                    if stored_email is None:
                        raise AccountNotFound(user_id)
                    if user_email is not None and not _same_email(stored_email, user_email):
                        raise ValidationMismatch(
                            f"Email on event does not match account {user_id!r}"
                        )

                    session.add(
                        CreditTransaction(
                            user_id=user_id,
                            user_email=user_email or stored_email,
                            credits_added=delta,
                            transaction_type=meta.transaction_type,
                            external_event_id=meta.external_event_id,
                            price_id=meta.price_id,
                            amount_paid=meta.amount_paid,
                            currency=meta.currency,
                            plan_name=meta.plan_name,
                        )
                    )
                    try:
                        await session.flush()
                    except IntegrityError as exc:
                        raise DuplicateEvent(meta.external_event_id, meta.price_id) from exc

                    values: dict[str, object] = {
                        "credits_balance": Account.credits_balance + delta,
                        "updated_at": datetime.now(timezone.utc),
                    }
                    if meta.subscription_plan is not None:
                        values["subscription_plan"] = meta.subscription_plan
                        values["subscription_status"] = SUBSCRIPTION_ACTIVE
                    new_balance = await session.scalar(
                        update(Account)
                        .where(Account.id == user_id)
                        .values(**values)
                        .returning(Account.credits_balance)
                        .execution_options(synchronize_session=False)
                    )

        CREDITS_APPLIED_TOTAL.labels(transaction_type=meta.transaction_type).inc(delta)
        logger.info(
            "Applied %d credits to %s (%s, event=%s, price=%s) -> balance %d",
            delta,
            user_id,
            meta.transaction_type,
            meta.external_event_id,
            meta.price_id,
            new_balance,
        )
        return int(new_balance)

    async def consume_credit(self, user_id: str) -> int:
        """Spend one credit and return the remaining balance.

        Raises:
            InsufficientCredits: the balance is already zero.
            AccountNotFound: no such account.
        """
        with tracer.start_as_current_span(SPAN_LEDGER_CONSUME):
            async with translate_db_errors("consume_credit"):
                async with self._session_factory() as session, session.begin():
                    remaining = await session.scalar(
                        update(Account)
                        .where(Account.id == user_id, Account.credits_balance > 0)
                        .values(
                            credits_balance=Account.credits_balance - 1,
                            updated_at=datetime.now(timezone.utc),
                        )
                        .returning(Account.credits_balance)
                        .execution_options(synchronize_session=False)
                    )
                    if remaining is None:
                        exists = await session.scalar(
                            select(Account.id).where(Account.id == user_id)
                        )
                        if exists is None:
                            raise AccountNotFound(user_id)
                        raise InsufficientCredits("Insufficient credits")

        CREDITS_CONSUMED_TOTAL.inc()
        return int(remaining)

    async def set_subscription(
        self, user_id: str, status: str, plan: str | None = None
    ) -> bool:
        """Update subscription state; returns ``False`` when the account is unknown."""
        values: dict[str, object] = {
            "subscription_status": status,
            "updated_at": datetime.now(timezone.utc),
        }
        if plan is not None:
            values["subscription_plan"] = plan
        async with translate_db_errors("set_subscription"):
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(Account)
                    .where(Account.id == user_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def get_account(self, user_id: str) -> AccountSnapshot | None:
        async with translate_db_errors("get_account"):
            async with self._session_factory() as session:
                account = await session.get(Account, user_id)
        if account is None:
            return None
        return AccountSnapshot(
            user_id=account.id,
            email=account.email,
            credits_balance=account.credits_balance,
            subscription_plan=account.subscription_plan,
            subscription_status=account.subscription_status,
        )
