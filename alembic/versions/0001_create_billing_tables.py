"""create accounts, credit_transactions and idempotency_records

Revision ID: 0001
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=None if nullable else sa.func.now(),
        nullable=nullable,
    )


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("credits_balance", sa.Integer(), server_default="0", nullable=False),
        sa.Column("subscription_plan", sa.String(length=64), nullable=True),
        sa.Column("subscription_status", sa.String(length=32), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_accounts"),
        sa.CheckConstraint(
            "credits_balance >= 0", name="ck_accounts_credits_non_negative"
        ),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("user_email", sa.String(length=320), nullable=True),
        sa.Column("credits_added", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(length=32), nullable=False),
        sa.Column("external_event_id", sa.String(length=255), nullable=False),
        sa.Column("price_id", sa.String(length=255), nullable=False),
        sa.Column("amount_paid", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("plan_name", sa.String(length=128), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id", name="pk_credit_transactions"),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["accounts.id"],
            name="fk_credit_transactions_user_id_accounts",
        ),
        sa.UniqueConstraint(
            "external_event_id",
            "price_id",
            name="uq_credit_transactions_event_price",
        ),
    )
    op.create_index(
        "ix_credit_transactions_user_id_created_at",
        "credit_transactions",
        ["user_id", "created_at"],
    )

    op.create_table(
        "idempotency_records",
        sa.Column("event_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("expires_at", nullable=True),
        sa.PrimaryKeyConstraint("event_key", name="pk_idempotency_records"),
    )
    op.create_index(
        "ix_idempotency_records_status", "idempotency_records", ["status"]
    )


def downgrade() -> None:
    op.drop_index("ix_idempotency_records_status", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    op.drop_index(
        "ix_credit_transactions_user_id_created_at", table_name="credit_transactions"
    )
    op.drop_table("credit_transactions")
    op.drop_table("accounts")
