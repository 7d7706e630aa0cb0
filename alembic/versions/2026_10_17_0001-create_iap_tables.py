"""create iap ledger tables

Revision ID: 2026_10_17_0001
Revises:
Create Date: 2026-10-17 00:00:00.000000

Creates the entitlement ledger:
- iap_transactions: append-only, one row per (provider, external_transaction_id)
- iap_coin_balances: coin balance per (profile_id, game_id), never negative
- iap_subscriptions: current no_ads subscription state per profile
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_17_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "iap_transactions",
        sa.Column("provider", sa.String(length=64), nullable=False),
        sa.Column("external_transaction_id", sa.String(length=255), nullable=False),
        sa.Column("profile_id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("raw", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("provider", "external_transaction_id"),
    )
    op.create_index("idx_iap_transactions_profile_id", "iap_transactions", ["profile_id"])
    op.create_index("idx_iap_transactions_created_at", "iap_transactions", ["created_at"])

    op.create_table(
        "iap_coin_balances",
        sa.Column("profile_id", sa.String(length=255), nullable=False),
        sa.Column("game_id", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint("balance >= 0", name="ck_iap_coin_balance_non_negative"),
        sa.PrimaryKeyConstraint("profile_id", "game_id"),
    )

    op.create_table(
        "iap_subscriptions",
        sa.Column("profile_id", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=64), nullable=False, server_default=""),
        sa.Column(
            "external_subscription_id",
            sa.String(length=255),
            nullable=False,
            server_default="",
        ),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="none"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("merged_into_profile_id", sa.String(length=255), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("profile_id"),
    )


def downgrade() -> None:
    op.drop_table("iap_subscriptions")
    op.drop_table("iap_coin_balances")
    op.drop_index("idx_iap_transactions_created_at", table_name="iap_transactions")
    op.drop_index("idx_iap_transactions_profile_id", table_name="iap_transactions")
    op.drop_table("iap_transactions")
