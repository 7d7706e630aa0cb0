"""
In-Memory Ledger Store - process-local store for tests and single-node dev.

All state lives in dicts guarded by one asyncio.Lock.
"""

import asyncio
import copy
from datetime import UTC, datetime
from typing import Any

from iap.models.domain import MergeResult, RecordResult, SubscriptionState
from iap.store.base import (
    balance_key,
    choose_subscription,
    merged_marker,
    normalize_key,
    transaction_key,
)


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class InMemoryIapStore:
    """Dict-backed ledger store. Data is lost when the process exits."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._transactions: dict[tuple[str, str], dict[str, Any]] = {}
        self._balances: dict[tuple[str, str], int] = {}
        self._subscriptions: dict[str, dict[str, Any]] = {}

    async def record_transaction(
        self, provider: str, external_transaction_id: str, record: dict[str, Any]
    ) -> RecordResult:
        key = transaction_key(provider, external_transaction_id)
        async with self._lock:
            existing = self._transactions.get(key)
            if existing is not None:
                return RecordResult(is_new=False, record=copy.deepcopy(existing["record"]))
            self._transactions[key] = {
                "record": copy.deepcopy(record),
                "created_at": _utc_now_iso(),
            }
            return RecordResult(is_new=True, record=copy.deepcopy(record))

    async def get_transaction(
        self, provider: str, external_transaction_id: str
    ) -> dict[str, Any] | None:
        async with self._lock:
            existing = self._transactions.get(transaction_key(provider, external_transaction_id))
            return copy.deepcopy(existing["record"]) if existing else None

    async def add_coins(self, profile_id: str, game_id: str, delta: int) -> int:
        async with self._lock:
            return self._add_coins_locked(balance_key(profile_id, game_id), int(delta))

    def _add_coins_locked(self, key: tuple[str, str], delta: int) -> int:
        balance = max(self._balances.get(key, 0) + delta, 0)
        self._balances[key] = balance
        return balance

    async def get_coins(self, profile_id: str) -> dict[str, int]:
        async with self._lock:
            return self._coins_locked(normalize_key(profile_id))

    def _coins_locked(self, profile_id: str) -> dict[str, int]:
        return {
            game_id: balance
            for (owner, game_id), balance in self._balances.items()
            if owner == profile_id
        }

    async def get_subscription(self, profile_id: str) -> SubscriptionState:
        async with self._lock:
            return SubscriptionState.from_record(
                self._subscriptions.get(normalize_key(profile_id))
            )

    async def upsert_subscription(
        self, profile_id: str, state: SubscriptionState
    ) -> SubscriptionState:
        async with self._lock:
            self._subscriptions[normalize_key(profile_id)] = state.to_record()
            return state

    async def merge_profiles(
        self, primary_profile_id: str, secondary_profile_id: str
    ) -> MergeResult:
        primary = normalize_key(primary_profile_id)
        secondary = normalize_key(secondary_profile_id)
        if not primary or not secondary or primary == secondary:
            return MergeResult(merged=False)

        async with self._lock:
            for game_id, balance in self._coins_locked(secondary).items():
                if balance <= 0:
                    continue
                self._add_coins_locked(balance_key(primary, game_id), balance)
                self._balances[balance_key(secondary, game_id)] = 0

            primary_sub = SubscriptionState.from_record(self._subscriptions.get(primary))
            secondary_sub = SubscriptionState.from_record(self._subscriptions.get(secondary))
            self._subscriptions[primary] = choose_subscription(
                primary_sub, secondary_sub
            ).to_record()
            self._subscriptions[secondary] = merged_marker(secondary_sub, primary).to_record()

        return MergeResult(merged=True)

    async def close(self) -> None:
        return None
