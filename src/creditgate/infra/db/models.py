"""SQLAlchemy ORM models for balances, the credit ledger and webhook claims.

All tables are managed by Alembic migrations.  The ``Base.metadata``
naming convention keeps constraint names deterministic across
environments.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ---------------------------------------------------------------------------
# Declarative base with naming convention
# ---------------------------------------------------------------------------

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Shared declarative base with an explicit naming convention."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# ---------------------------------------------------------------------------
# Status / type constants
# ---------------------------------------------------------------------------

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TRANSACTION_PURCHASE = "purchase"
TRANSACTION_SUBSCRIPTION_RENEWAL = "subscription_renewal"


# ---------------------------------------------------------------------------
# Accounts (balance table)
# ---------------------------------------------------------------------------


class Account(Base):
    """Current credit balance and subscription state for one user.

    ``credits_balance`` only changes through ``CreditLedger``.  The plan
    type shown to clients is derived from these columns, never stored.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    credits_balance: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    subscription_plan: Mapped[str | None] = mapped_column(String(64), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(
        String(32), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="credits_non_negative"),
    )

    def __repr__(self) -> str:
        return (
            f"<Account(id={self.id!r}, credits_balance={self.credits_balance}, "
            f"subscription_status={self.subscription_status!r})>"
        )


# ---------------------------------------------------------------------------
# Credit transactions (append-only ledger)
# ---------------------------------------------------------------------------


class CreditTransaction(Base):
    """One credit-affecting line item from a payment event.

    Rows are never updated.  ``(external_event_id, price_id)`` is unique,
    so replaying an event cannot add a second row for the same item.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id"), nullable=False
    )
    user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    credits_added: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    price_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    plan_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "external_event_id",
            "price_id",
            name="uq_credit_transactions_event_price",
        ),
        Index("ix_credit_transactions_user_id_created_at", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(user_id={self.user_id!r}, "
            f"credits_added={self.credits_added}, "
            f"external_event_id={self.external_event_id!r})>"
        )


# ---------------------------------------------------------------------------
# Idempotency records (webhook claims)
# ---------------------------------------------------------------------------


class IdempotencyRecord(Base):
    """Processing state of one external event.

    ``expires_at`` bounds a ``processing`` claim left behind by a crashed
    worker; it is cleared once the event completes.
    """

    __tablename__ = "idempotency_records"

    event_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (Index("ix_idempotency_records_status", "status"),)

    def __repr__(self) -> str:
        return f"<IdempotencyRecord(event_key={self.event_key!r}, status={self.status!r})>"
