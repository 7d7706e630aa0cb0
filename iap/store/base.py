"""
Ledger Store Protocol - Backend-agnostic interface for the entitlement ledger.

Every backend (memory, JSON file, PostgreSQL) keys its data the same way:
transactions by (provider, external_transaction_id), coin balances by
(profile_id, game_id), subscriptions by profile_id. All key parts are trimmed
and lowercased before use.
"""

from typing import Any, Protocol

from iap.models.domain import MergeResult, RecordResult, SubscriptionState


def normalize_key(value: Any) -> str:
    """Trim and lowercase a key component."""
    return str(value or "").strip().lower()


def transaction_key(provider: Any, external_transaction_id: Any) -> tuple[str, str]:
    """Composite ledger key used by the memory and file stores."""
    return normalize_key(provider), normalize_key(external_transaction_id)


def balance_key(profile_id: Any, game_id: Any) -> tuple[str, str]:
    """Composite balance key used by the memory and file stores."""
    return normalize_key(profile_id), normalize_key(game_id)


def choose_subscription(
    primary: SubscriptionState, secondary: SubscriptionState
) -> SubscriptionState:
    """
    Pick the subscription that survives a profile merge.

    An active subscription beats an inactive one. Otherwise the later expiry
    wins; equal expiries keep the primary's state.
    """
    if primary.active and not secondary.active:
        return primary
    if secondary.active and not primary.active:
        return secondary
    if (secondary.expires_at or 0) > (primary.expires_at or 0):
        return secondary
    return primary


def merged_marker(secondary: SubscriptionState, primary_profile_id: str) -> SubscriptionState:
    """State left on the secondary profile after its entitlements move."""
    return SubscriptionState(
        provider=secondary.provider,
        external_subscription_id=secondary.external_subscription_id,
        status="merged",
        active=False,
        expires_at=secondary.expires_at,
        merged_into_profile_id=primary_profile_id,
    )


class IapStore(Protocol):
    """
    Entitlement ledger store protocol.

    Implementations must make each operation atomic. record_transaction is the
    single serialization point for idempotency: concurrent calls for one key
    yield exactly one is_new=True.
    """

    async def record_transaction(
        self, provider: str, external_transaction_id: str, record: dict[str, Any]
    ) -> RecordResult:
        """
        Insert a ledger entry if absent.

        Returns:
            RecordResult with is_new=True and the stored record on first insert,
            or is_new=False and the previously stored record on conflict.

        Raises:
            StorageError: If the backend fails
        """
        ...

    async def get_transaction(
        self, provider: str, external_transaction_id: str
    ) -> dict[str, Any] | None:
        """Return the stored ledger record for a key, or None."""
        ...

    async def add_coins(self, profile_id: str, game_id: str, delta: int) -> int:
        """Add delta to a balance, clamp at zero, and return the new balance."""
        ...

    async def get_coins(self, profile_id: str) -> dict[str, int]:
        """Return every balance of a profile keyed by game id."""
        ...

    async def get_subscription(self, profile_id: str) -> SubscriptionState:
        """Return the subscription state of a profile (default state if none)."""
        ...

    async def upsert_subscription(
        self, profile_id: str, state: SubscriptionState
    ) -> SubscriptionState:
        """Replace the subscription state of a profile."""
        ...

    async def merge_profiles(
        self, primary_profile_id: str, secondary_profile_id: str
    ) -> MergeResult:
        """Move coins and subscription from secondary onto primary."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...
