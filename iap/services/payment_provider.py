"""
Payment Provider Protocol - Provider-agnostic purchase verification.

Adapters for each store implement PurchaseVerifier. The registry dispatches a
VerificationRequest to the adapter registered for its provider and enforces a
common timeout, so a slow provider surfaces as a verification failure.
"""

import asyncio
import time
from collections.abc import Mapping
from typing import Protocol

from structlog import get_logger

from iap.exceptions import PurchaseVerificationError, UnsupportedProviderError
from iap.models.api import PurchaseType
from iap.models.domain import SubscriptionState, VerificationRequest, VerifiedPurchase
from iap.observability.metrics import metrics

logger = get_logger(__name__)


class PurchaseVerifier(Protocol):
    """
    Purchase verifier protocol.

    Any provider adapter (App Store, Google Play, PayPal, test fakes) must
    implement this interface.
    """

    async def verify_purchase(self, request: VerificationRequest) -> VerifiedPurchase:
        """
        Verify purchase evidence with the provider.

        Args:
            request: Provider, catalog entry, opaque payload and credentials

        Returns:
            Verified purchase fact. Consumables carry game_id and coins_delta;
            subscriptions carry a SubscriptionState.

        Raises:
            PurchaseVerificationError: If the payload is not a completed purchase,
                credentials are missing, or the provider call fails
        """
        ...


class ProviderRegistry:
    """Provider-keyed dispatch over PurchaseVerifier adapters."""

    def __init__(
        self,
        verifiers: Mapping[str, PurchaseVerifier],
        timeout_seconds: float = 30.0,
    ) -> None:
        self._verifiers = {key.strip().lower(): value for key, value in verifiers.items()}
        self.timeout_seconds = timeout_seconds

    @property
    def providers(self) -> tuple[str, ...]:
        return tuple(self._verifiers)

    def get(self, provider: str) -> PurchaseVerifier:
        """Return the adapter for a provider or raise UnsupportedProviderError."""
        verifier = self._verifiers.get(provider.strip().lower())
        if verifier is None:
            raise UnsupportedProviderError(provider)
        return verifier

    async def verify_purchase(self, request: VerificationRequest) -> VerifiedPurchase:
        """Dispatch to the provider adapter under the configured timeout."""
        verifier = self.get(request.provider)
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(
                verifier.verify_purchase(request), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            logger.warning(
                "provider_verification_timeout",
                provider=request.provider,
                product_id=request.product_id,
                timeout_seconds=self.timeout_seconds,
            )
            raise PurchaseVerificationError(
                request.provider, f"timed out after {self.timeout_seconds}s"
            ) from exc
        finally:
            metrics.verification_duration_seconds.labels(provider=request.provider).observe(
                time.perf_counter() - started
            )


def consumable_purchase(request: VerificationRequest, transaction_id: str) -> VerifiedPurchase:
    """Verified consumable: coins and game come from the catalog entry."""
    entry = request.catalog_entry
    return VerifiedPurchase(
        provider=request.provider,
        external_transaction_id=transaction_id,
        type=PurchaseType.CONSUMABLE,
        game_id=entry.game_id or "",
        coins_delta=entry.coins,
    )


def subscription_purchase(
    request: VerificationRequest,
    transaction_id: str,
    subscription_id: str,
    expires_at: int,
) -> VerifiedPurchase:
    """Verified subscription: active while expires_at is in the future."""
    active = expires_at > request.now_seconds
    return VerifiedPurchase(
        provider=request.provider,
        external_transaction_id=transaction_id,
        type=PurchaseType.SUBSCRIPTION,
        subscription=SubscriptionState(
            provider=request.provider,
            external_subscription_id=subscription_id or transaction_id,
            status="active" if active else "expired",
            active=active,
            expires_at=expires_at if expires_at > 0 else None,
        ),
    )


def payload_value(payload: Mapping[str, object], *keys: str) -> str:
    """First non-empty payload field among keys, trimmed."""
    for key in keys:
        value = payload.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""
