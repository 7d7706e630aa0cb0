"""
Database Models - SQLAlchemy ORM models for the entitlement ledger.

All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class IapTransaction(Base):
    """
    ORM model for iap_transactions table.

    Append-only ledger. The composite primary key is the idempotency key:
    one row per (provider, external_transaction_id), ever.
    """

    __tablename__ = "iap_transactions"

    provider: Mapped[str] = mapped_column(String(64), primary_key=True)
    external_transaction_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    raw: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_iap_transactions_profile_id", "profile_id"),
        Index("idx_iap_transactions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<IapTransaction(provider={self.provider}, "
            f"external_transaction_id={self.external_transaction_id}, type={self.type})>"
        )


class IapCoinBalance(Base):
    """ORM model for iap_coin_balances table - one row per (profile, game)."""

    __tablename__ = "iap_coin_balances"

    profile_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("balance >= 0", name="ck_iap_coin_balance_non_negative"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<IapCoinBalance(profile_id={self.profile_id}, game_id={self.game_id}, "
            f"balance={self.balance})>"
        )


class IapSubscription(Base):
    """ORM model for iap_subscriptions table - current no_ads state per profile."""

    __tablename__ = "iap_subscriptions"

    profile_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    provider: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    external_subscription_id: Mapped[str] = mapped_column(
        String(255), nullable=False, default=""
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    merged_into_profile_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<IapSubscription(profile_id={self.profile_id}, status={self.status}, "
            f"active={self.active})>"
        )
