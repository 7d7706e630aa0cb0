"""
PostgreSQL Ledger Store - durable store on SQLAlchemy async sessions.

Each operation opens its own session and transaction, so operations issued
concurrently (e.g. the coin and subscription reads of an entitlements
snapshot) never share a session.

Idempotency relies on the primary key of iap_transactions:
INSERT ... ON CONFLICT DO NOTHING RETURNING yields a row only for the
first writer. Balances use an atomic upsert clamped with GREATEST(.., 0).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from iap.db.models import IapCoinBalance, IapSubscription, IapTransaction
from iap.exceptions import StorageError
from iap.models.domain import MergeResult, RecordResult, SubscriptionState
from iap.store.base import choose_subscription, merged_marker, normalize_key

logger = get_logger(__name__)


def _to_datetime(epoch_seconds: int | None) -> datetime | None:
    if not epoch_seconds or epoch_seconds <= 0:
        return None
    return datetime.fromtimestamp(epoch_seconds, tz=UTC)


def _to_epoch(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


def _row_to_state(row: IapSubscription | None) -> SubscriptionState:
    if row is None:
        return SubscriptionState()
    return SubscriptionState(
        provider=row.provider or "",
        external_subscription_id=row.external_subscription_id or "",
        status=row.status or ("active" if row.active else "none"),
        active=bool(row.active),
        expires_at=_to_epoch(row.expires_at),
        merged_into_profile_id=row.merged_into_profile_id,
    )


class SqlIapStore:
    """Ledger store backed by the iap_* PostgreSQL tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[AsyncSession]:
        """Open a session with one transaction; map driver errors to StorageError."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error("sql_store_operation_failed", operation=operation, error=str(exc))
            raise StorageError(f"{operation} failed: {exc}") from exc

    # ========================================================================
    # Transactions
    # ========================================================================

    async def record_transaction(
        self, provider: str, external_transaction_id: str, record: dict[str, Any]
    ) -> RecordResult:
        provider_key = normalize_key(provider)
        tx_key = normalize_key(external_transaction_id)

        async with self._transaction("record_transaction") as session:
            stmt = (
                pg_insert(IapTransaction)
                .values(
                    provider=provider_key,
                    external_transaction_id=tx_key,
                    profile_id=normalize_key(record.get("profile_id")),
                    type=str(record.get("type") or ""),
                    product_id=str(record.get("product_id") or ""),
                    raw=record,
                )
                .on_conflict_do_nothing(index_elements=["provider", "external_transaction_id"])
                .returning(IapTransaction.raw)
            )
            inserted = (await session.execute(stmt)).first()
            if inserted is not None:
                return RecordResult(is_new=True, record=dict(inserted[0]))

            existing = await session.scalar(
                select(IapTransaction.raw).where(
                    IapTransaction.provider == provider_key,
                    IapTransaction.external_transaction_id == tx_key,
                )
            )
            return RecordResult(is_new=False, record=dict(existing or {}))

    async def get_transaction(
        self, provider: str, external_transaction_id: str
    ) -> dict[str, Any] | None:
        async with self._transaction("get_transaction") as session:
            raw = await session.scalar(
                select(IapTransaction.raw).where(
                    IapTransaction.provider == normalize_key(provider),
                    IapTransaction.external_transaction_id
                    == normalize_key(external_transaction_id),
                )
            )
            return dict(raw) if raw is not None else None

    # ========================================================================
    # Coins
    # ========================================================================

    @staticmethod
    async def _add_coins(session: AsyncSession, profile_id: str, game_id: str, delta: int) -> int:
        stmt = pg_insert(IapCoinBalance).values(
            profile_id=profile_id,
            game_id=game_id,
            balance=max(delta, 0),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["profile_id", "game_id"],
            set_={
                "balance": func.greatest(IapCoinBalance.balance + delta, 0),
                "updated_at": func.now(),
            },
        ).returning(IapCoinBalance.balance)
        balance = await session.scalar(stmt)
        return int(balance or 0)

    async def add_coins(self, profile_id: str, game_id: str, delta: int) -> int:
        async with self._transaction("add_coins") as session:
            return await self._add_coins(
                session, normalize_key(profile_id), normalize_key(game_id), int(delta)
            )

    async def get_coins(self, profile_id: str) -> dict[str, int]:
        async with self._transaction("get_coins") as session:
            result = await session.execute(
                select(IapCoinBalance.game_id, IapCoinBalance.balance).where(
                    IapCoinBalance.profile_id == normalize_key(profile_id)
                )
            )
            return {row.game_id: int(row.balance) for row in result}

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def get_subscription(self, profile_id: str) -> SubscriptionState:
        async with self._transaction("get_subscription") as session:
            row = await session.get(IapSubscription, normalize_key(profile_id))
            return _row_to_state(row)

    @staticmethod
    async def _upsert_subscription(
        session: AsyncSession, profile_id: str, state: SubscriptionState
    ) -> None:
        values = {
            "provider": state.provider,
            "external_subscription_id": state.external_subscription_id,
            "status": state.status,
            "active": state.active,
            "expires_at": _to_datetime(state.expires_at),
            "merged_into_profile_id": state.merged_into_profile_id,
        }
        stmt = pg_insert(IapSubscription).values(profile_id=profile_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["profile_id"],
            set_={**values, "updated_at": func.now()},
        )
        await session.execute(stmt)

    async def upsert_subscription(
        self, profile_id: str, state: SubscriptionState
    ) -> SubscriptionState:
        async with self._transaction("upsert_subscription") as session:
            await self._upsert_subscription(session, normalize_key(profile_id), state)
        return state

    # ========================================================================
    # Merge
    # ========================================================================

    async def merge_profiles(
        self, primary_profile_id: str, secondary_profile_id: str
    ) -> MergeResult:
        primary = normalize_key(primary_profile_id)
        secondary = normalize_key(secondary_profile_id)
        if not primary or not secondary or primary == secondary:
            return MergeResult(merged=False)

        async with self._transaction("merge_profiles") as session:
            balances = await session.execute(
                select(IapCoinBalance.game_id, IapCoinBalance.balance)
                .where(IapCoinBalance.profile_id == secondary)
                .with_for_update()
            )
            for row in balances.all():
                if row.balance <= 0:
                    continue
                await self._add_coins(session, primary, row.game_id, int(row.balance))
                await session.execute(
                    update(IapCoinBalance)
                    .where(
                        IapCoinBalance.profile_id == secondary,
                        IapCoinBalance.game_id == row.game_id,
                    )
                    .values(balance=0, updated_at=func.now())
                )

            subscriptions = await session.scalars(
                select(IapSubscription)
                .where(IapSubscription.profile_id.in_([primary, secondary]))
                .with_for_update()
            )
            by_profile = {row.profile_id: _row_to_state(row) for row in subscriptions}
            primary_sub = by_profile.get(primary, SubscriptionState())
            secondary_sub = by_profile.get(secondary, SubscriptionState())

            await self._upsert_subscription(
                session, primary, choose_subscription(primary_sub, secondary_sub)
            )
            await self._upsert_subscription(
                session, secondary, merged_marker(secondary_sub, primary)
            )

        logger.info("sql_store_profiles_merged", primary=primary, secondary=secondary)
        return MergeResult(merged=True)

    async def close(self) -> None:
        return None
