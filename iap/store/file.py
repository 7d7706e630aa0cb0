"""
JSON File Ledger Store - single-file persistence for small deployments.

The whole ledger is held in memory and rewritten after every mutation. Writes
go to a temporary file that then replaces the target, so a crash never leaves
a half-written ledger. One asyncio.Lock serializes reads and writes. When a
write fails the in-memory state is restored to what it was before the
operation, so a failed call never takes effect later.

File layout:
    {
        "transactions": [
            {"provider": "...", "external_transaction_id": "...", "value": {...}}
        ],
        "coin_balances": [{"profile_id": "...", "game_id": "...", "balance": 0}],
        "subscriptions": [{"profile_id": "...", "value": {...}}]
    }
"""

import asyncio
import copy
import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from structlog import get_logger

from iap.exceptions import StorageError
from iap.models.domain import MergeResult, RecordResult, SubscriptionState
from iap.store.base import (
    balance_key,
    choose_subscription,
    merged_marker,
    normalize_key,
    transaction_key,
)

logger = get_logger(__name__)

Checkpoint = tuple[
    dict[tuple[str, str], dict[str, Any]],
    dict[tuple[str, str], int],
    dict[str, dict[str, Any]],
]


class JsonFileIapStore:
    """Ledger store persisted to one JSON document."""

    def __init__(self, file_path: str | Path) -> None:
        self.file_path = Path(file_path)
        self._lock = asyncio.Lock()
        self._loaded = False
        self._transactions: dict[tuple[str, str], dict[str, Any]] = {}
        self._balances: dict[tuple[str, str], int] = {}
        self._subscriptions: dict[str, dict[str, Any]] = {}

    # ========================================================================
    # Persistence
    # ========================================================================

    def _read_file(self) -> dict[str, Any]:
        if not self.file_path.exists():
            return {}
        text = self.file_path.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        data = json.loads(text)
        return data if isinstance(data, dict) else {}

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        try:
            data = await asyncio.to_thread(self._read_file)
        except (OSError, ValueError) as exc:
            logger.error("file_store_load_failed", path=str(self.file_path), error=str(exc))
            raise StorageError(f"cannot read {self.file_path}: {exc}") from exc

        for item in data.get("transactions") or []:
            if not isinstance(item, dict) or not isinstance(item.get("value"), dict):
                continue
            key = transaction_key(item.get("provider"), item.get("external_transaction_id"))
            if all(key):
                self._transactions[key] = item["value"]
        for item in data.get("coin_balances") or []:
            if not isinstance(item, dict):
                continue
            key = balance_key(item.get("profile_id"), item.get("game_id"))
            if not all(key):
                continue
            try:
                balance = int(item.get("balance", 0))
            except (TypeError, ValueError):
                balance = 0
            self._balances[key] = max(balance, 0)
        for item in data.get("subscriptions") or []:
            if not isinstance(item, dict) or not isinstance(item.get("value"), dict):
                continue
            profile_id = normalize_key(item.get("profile_id"))
            if profile_id:
                self._subscriptions[profile_id] = item["value"]

        self._loaded = True
        logger.info(
            "file_store_loaded",
            path=str(self.file_path),
            transactions=len(self._transactions),
            balances=len(self._balances),
        )

    def _snapshot(self) -> dict[str, Any]:
        return {
            "transactions": [
                {"provider": provider, "external_transaction_id": tx_id, "value": value}
                for (provider, tx_id), value in self._transactions.items()
            ],
            "coin_balances": [
                {"profile_id": profile_id, "game_id": game_id, "balance": balance}
                for (profile_id, game_id), balance in self._balances.items()
            ],
            "subscriptions": [
                {"profile_id": profile_id, "value": value}
                for profile_id, value in self._subscriptions.items()
            ],
        }

    def _write_file(self, data: dict[str, Any]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.file_path.with_name(f"{self.file_path.name}.{os.getpid()}.tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.file_path)

    def _checkpoint(self) -> Checkpoint:
        # Values are replaced, never mutated in place, so shallow copies suffice.
        return dict(self._transactions), dict(self._balances), dict(self._subscriptions)

    async def _commit(self, checkpoint: Checkpoint) -> None:
        """Write the ledger, restoring the checkpoint if the write fails."""
        try:
            await asyncio.to_thread(self._write_file, self._snapshot())
        except OSError as exc:
            self._transactions, self._balances, self._subscriptions = checkpoint
            logger.error("file_store_write_failed", path=str(self.file_path), error=str(exc))
            raise StorageError(f"cannot write {self.file_path}: {exc}") from exc

    # ========================================================================
    # Ledger operations
    # ========================================================================

    async def record_transaction(
        self, provider: str, external_transaction_id: str, record: dict[str, Any]
    ) -> RecordResult:
        key = transaction_key(provider, external_transaction_id)
        async with self._lock:
            await self._ensure_loaded()
            existing = self._transactions.get(key)
            if existing is not None:
                return RecordResult(is_new=False, record=copy.deepcopy(existing["record"]))
            checkpoint = self._checkpoint()
            self._transactions[key] = {
                "record": copy.deepcopy(record),
                "created_at": datetime.now(UTC).isoformat(),
            }
            await self._commit(checkpoint)
            return RecordResult(is_new=True, record=copy.deepcopy(record))

    async def get_transaction(
        self, provider: str, external_transaction_id: str
    ) -> dict[str, Any] | None:
        async with self._lock:
            await self._ensure_loaded()
            existing = self._transactions.get(transaction_key(provider, external_transaction_id))
            return copy.deepcopy(existing["record"]) if existing else None

    async def add_coins(self, profile_id: str, game_id: str, delta: int) -> int:
        key = balance_key(profile_id, game_id)
        async with self._lock:
            await self._ensure_loaded()
            checkpoint = self._checkpoint()
            balance = max(self._balances.get(key, 0) + int(delta), 0)
            self._balances[key] = balance
            await self._commit(checkpoint)
            return balance

    def _coins_locked(self, profile_id: str) -> dict[str, int]:
        return {
            game_id: balance
            for (owner, game_id), balance in self._balances.items()
            if owner == profile_id
        }

    async def get_coins(self, profile_id: str) -> dict[str, int]:
        async with self._lock:
            await self._ensure_loaded()
            return self._coins_locked(normalize_key(profile_id))

    async def get_subscription(self, profile_id: str) -> SubscriptionState:
        async with self._lock:
            await self._ensure_loaded()
            return SubscriptionState.from_record(
                self._subscriptions.get(normalize_key(profile_id))
            )

    async def upsert_subscription(
        self, profile_id: str, state: SubscriptionState
    ) -> SubscriptionState:
        async with self._lock:
            await self._ensure_loaded()
            checkpoint = self._checkpoint()
            self._subscriptions[normalize_key(profile_id)] = state.to_record()
            await self._commit(checkpoint)
            return state

    async def merge_profiles(
        self, primary_profile_id: str, secondary_profile_id: str
    ) -> MergeResult:
        primary = normalize_key(primary_profile_id)
        secondary = normalize_key(secondary_profile_id)
        if not primary or not secondary or primary == secondary:
            return MergeResult(merged=False)

        async with self._lock:
            await self._ensure_loaded()
            checkpoint = self._checkpoint()
            for game_id, balance in self._coins_locked(secondary).items():
                if balance <= 0:
                    continue
                target = balance_key(primary, game_id)
                self._balances[target] = self._balances.get(target, 0) + balance
                self._balances[balance_key(secondary, game_id)] = 0

            primary_sub = SubscriptionState.from_record(self._subscriptions.get(primary))
            secondary_sub = SubscriptionState.from_record(self._subscriptions.get(secondary))
            self._subscriptions[primary] = choose_subscription(
                primary_sub, secondary_sub
            ).to_record()
            self._subscriptions[secondary] = merged_marker(secondary_sub, primary).to_record()
            await self._commit(checkpoint)

        logger.info("file_store_profiles_merged", primary=primary, secondary=secondary)
        return MergeResult(merged=True)

    async def close(self) -> None:
        return None
