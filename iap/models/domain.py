"""
Domain Models - Internal business logic models using dataclasses.

All records handed between components are immutable dataclasses. Stores
persist them through their ``to_record`` / ``from_record`` forms.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from iap.models.api import PurchaseType


def _to_int(value: Any, fallback: int = 0) -> int:
    """Floor a number-ish value to int, falling back on garbage."""
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return fallback


@dataclass(frozen=True)
class CatalogEntry:
    """Immutable catalog entry - a coin pack or a subscription plan."""

    type: PurchaseType
    product_id: str
    game_id: str | None = None
    coins: int = 0
    price: Decimal | None = None
    currency: str | None = None
    entitlement_key: str | None = None
    plan: str | None = None

    def __post_init__(self) -> None:
        """Validate catalog entry shape."""
        if not self.product_id:
            raise ValueError("product_id cannot be empty")
        if self.type == PurchaseType.CONSUMABLE:
            if not self.game_id:
                raise ValueError(f"Consumable {self.product_id} requires game_id")
            if self.coins <= 0:
                raise ValueError(f"Coins must be positive: {self.coins}")
        elif not self.entitlement_key:
            raise ValueError(f"Subscription {self.product_id} requires entitlement_key")

    @property
    def is_consumable(self) -> bool:
        return self.type == PurchaseType.CONSUMABLE


@dataclass(frozen=True)
class Catalog:
    """Resolved product catalog for one game (or the base catalog)."""

    consumables: Mapping[str, CatalogEntry]
    subscriptions: Mapping[str, CatalogEntry]


@dataclass(frozen=True)
class SubscriptionState:
    """Subscription entitlement state for one profile."""

    provider: str = ""
    external_subscription_id: str = ""
    status: str = "none"
    active: bool = False
    expires_at: int | None = None
    merged_into_profile_id: str | None = None

    def to_record(self) -> dict[str, Any]:
        """Serializable form used by stores and ledger records."""
        record: dict[str, Any] = {
            "provider": self.provider,
            "external_subscription_id": self.external_subscription_id,
            "status": self.status,
            "active": self.active,
            "expires_at": self.expires_at,
        }
        if self.merged_into_profile_id:
            record["merged_into_profile_id"] = self.merged_into_profile_id
        return record

    @classmethod
    def from_record(cls, data: Mapping[str, Any] | None) -> "SubscriptionState":
        """Parse a stored record, tolerating missing or malformed fields."""
        if not data:
            return cls()
        active = bool(data.get("active"))
        expires_at = _to_int(data.get("expires_at"), 0)
        return cls(
            provider=str(data.get("provider") or ""),
            external_subscription_id=str(data.get("external_subscription_id") or ""),
            status=str(data.get("status") or ("active" if active else "none")),
            active=active,
            expires_at=expires_at if expires_at > 0 else None,
            merged_into_profile_id=data.get("merged_into_profile_id") or None,
        )

    def to_snapshot(self) -> dict[str, Any]:
        """Client-facing ``no_ads`` shape."""
        snapshot: dict[str, Any] = {"active": self.active, "status": self.status}
        if self.expires_at and self.expires_at > 0:
            snapshot["expires_at"] = self.expires_at
        return snapshot


@dataclass(frozen=True)
class VerificationRequest:
    """Input handed to a provider adapter."""

    provider: str
    product_id: str
    payload: Mapping[str, Any]
    catalog_entry: CatalogEntry
    now_seconds: int
    provider_config: Mapping[str, str] = field(default_factory=dict)
    game_id: str | None = None


@dataclass(frozen=True)
class VerifiedPurchase:
    """Purchase fact returned by a provider adapter."""

    provider: str
    external_transaction_id: str
    type: PurchaseType
    game_id: str = ""
    coins_delta: int = 0
    subscription: SubscriptionState | None = None


@dataclass(frozen=True)
class PurchaseInput:
    """Raw purchase request before normalization."""

    profile_id: str
    provider: str
    product_id: str
    payload: Mapping[str, Any]
    export_target: str | None = None
    game_id: str | None = None
    now_seconds: int | None = None


@dataclass(frozen=True)
class NormalizedPurchase:
    """Canonical purchase record - produced once per verification call."""

    provider: str
    external_transaction_id: str
    type: PurchaseType
    product_id: str
    game_id: str
    coins_delta: int
    subscription: SubscriptionState | None
    export_target: str

    def __post_init__(self) -> None:
        """Validate purchase invariants."""
        if not self.external_transaction_id:
            raise ValueError("external_transaction_id cannot be empty")
        if self.coins_delta < 0:
            raise ValueError(f"coins_delta cannot be negative: {self.coins_delta}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "external_transaction_id": self.external_transaction_id,
            "type": self.type.value,
            "product_id": self.product_id,
            "game_id": self.game_id,
            "coins_delta": self.coins_delta,
            "subscription": self.subscription.to_record() if self.subscription else None,
            "export_target": self.export_target,
        }


@dataclass(frozen=True)
class RecordResult:
    """Outcome of an insert-if-absent ledger write."""

    is_new: bool
    record: dict[str, Any]


@dataclass(frozen=True)
class MergeResult:
    """Outcome of a profile merge."""

    merged: bool


@dataclass(frozen=True)
class EntitlementsSnapshot:
    """Coins and subscription state for one profile."""

    profile_id: str
    no_ads: SubscriptionState
    coins: Mapping[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile_id": self.profile_id,
            "no_ads": self.no_ads.to_snapshot(),
            "coins": {game_id: {"balance": balance} for game_id, balance in self.coins.items()},
        }


@dataclass(frozen=True)
class PurchaseResult:
    """Result of verify-purchase / webhook ingestion."""

    deduplicated: bool
    purchase: NormalizedPurchase
    entitlements: EntitlementsSnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "deduplicated": self.deduplicated,
            "purchase": self.purchase.to_dict(),
            "entitlements": self.entitlements.to_dict(),
        }


@dataclass(frozen=True)
class CoinAdjustment:
    """Internal coin delta keyed by a caller-supplied idempotency key."""

    profile_id: str
    game_id: str
    delta: int
    idempotency_key: str
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile_id": self.profile_id,
            "game_id": self.game_id,
            "delta": self.delta,
            "idempotency_key": self.idempotency_key,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AdjustmentResult:
    """Result of an internal coin adjustment."""

    deduplicated: bool
    adjustment: CoinAdjustment
    balance: int
    entitlements: EntitlementsSnapshot

    def to_dict(self) -> dict[str, Any]:
        return {
            "deduplicated": self.deduplicated,
            "adjustment": self.adjustment.to_dict(),
            "balance": self.balance,
            "entitlements": self.entitlements.to_dict(),
        }


@dataclass(frozen=True)
class IapRuntimeConfig:
    """Per-game runtime config: catalog overrides and provider credentials."""

    game_id: str
    environment: str
    catalog: Mapping[str, Any] = field(default_factory=dict)
    provider_configs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
