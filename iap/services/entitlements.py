"""
Entitlement Service - orchestrates verification and the ledger.

Every effect on a balance or subscription is gated by a ledger insert keyed by
(provider, external_transaction_id). A repeated purchase, webhook delivery or
adjustment finds the existing entry and returns deduplicated=True without
touching balances.
"""

import asyncio
from collections.abc import Mapping
from typing import Any

from structlog import get_logger

from iap.exceptions import (
    IapError,
    InputValidationError,
    InsufficientCoinsError,
    InvalidAdjustmentError,
    WebhookPayloadError,
)
from iap.models.api import INTERNAL_PROVIDER, ExportTarget, Provider, PurchaseType
from iap.models.domain import (
    AdjustmentResult,
    CoinAdjustment,
    EntitlementsSnapshot,
    MergeResult,
    PurchaseInput,
    PurchaseResult,
)
from iap.observability.metrics import metrics
from iap.observability.tracing import trace_operation
from iap.services.purchase_normalizer import PurchaseNormalizer
from iap.store.base import IapStore, normalize_key

logger = get_logger(__name__)

# Export target assumed for webhooks that do not name one
WEBHOOK_DEFAULT_TARGETS: dict[str, str] = {
    Provider.APPLE.value: ExportTarget.IOS.value,
    Provider.GOOGLE.value: ExportTarget.ANDROID.value,
    Provider.PAYPAL_WEB.value: ExportTarget.WEB.value,
}


def _require(value: Any, field_name: str) -> str:
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise InputValidationError(f"{field_name} is required")
    return text


class EntitlementService:
    """
    Entitlement service facade.

    Operations:
    - verify_purchase: normalize, record, apply once
    - apply_webhook_event: provider callback mapped onto verify_purchase
    - adjust_coins: idempotent internal credit/debit
    - merge_profiles: move a secondary profile's entitlements onto a primary
    - get_entitlements: coins + no_ads snapshot
    """

    def __init__(self, store: IapStore, normalizer: PurchaseNormalizer) -> None:
        """Initialize entitlement service with an explicit store."""
        self.store = store
        self.normalizer = normalizer

    async def get_entitlements(self, profile_id: str) -> EntitlementsSnapshot:
        """Read coins and subscription concurrently."""
        profile_id = _require(profile_id, "profile_id")
        subscription, coins = await asyncio.gather(
            self.store.get_subscription(profile_id),
            self.store.get_coins(profile_id),
        )
        return EntitlementsSnapshot(profile_id=profile_id, no_ads=subscription, coins=coins)

    async def verify_purchase(
        self,
        profile_id: str,
        provider: str,
        product_id: str,
        payload: Mapping[str, Any] | None = None,
        export_target: str | None = None,
        game_id: str | None = None,
        now_seconds: int | None = None,
    ) -> PurchaseResult:
        """
        Verify a purchase and apply its effect exactly once.

        Raises:
            InputValidationError: Missing profile, unknown provider/target/product
            PolicyViolationError: Routing or game ownership rule broken
            PurchaseVerificationError: Provider rejected the payload
            StorageError: Ledger backend failure
        """
        profile_id = _require(profile_id, "profile_id")
        with trace_operation("verify_purchase", provider=provider, product_id=product_id):
            try:
                purchase = await self.normalizer.normalize(
                    PurchaseInput(
                        profile_id=profile_id,
                        provider=provider,
                        product_id=product_id,
                        payload=payload if isinstance(payload, Mapping) else {},
                        export_target=export_target,
                        game_id=game_id,
                        now_seconds=now_seconds,
                    )
                )
            except IapError as exc:
                provider_label = str(provider or "").strip().lower()
                metrics.record_verification_failure(
                    provider_label if provider_label in WEBHOOK_DEFAULT_TARGETS else "unknown",
                    type(exc).__name__,
                )
                logger.warning(
                    "purchase_rejected",
                    profile_id=profile_id,
                    provider=provider,
                    product_id=product_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise

            record = {
                "profile_id": profile_id,
                "provider": purchase.provider,
                "type": purchase.type.value,
                "product_id": purchase.product_id,
                "normalized": purchase.to_dict(),
            }
            recorded = await self.store.record_transaction(
                purchase.provider, purchase.external_transaction_id, record
            )

            if not recorded.is_new:
                metrics.record_purchase(
                    purchase.provider, purchase.type.value, True, purchase.coins_delta
                )
                logger.info(
                    "purchase_deduplicated",
                    profile_id=profile_id,
                    provider=purchase.provider,
                    external_transaction_id=purchase.external_transaction_id,
                    recorded_profile_id=recorded.record.get("profile_id"),
                )
                return PurchaseResult(
                    deduplicated=True,
                    purchase=purchase,
                    entitlements=await self.get_entitlements(profile_id),
                )

            if purchase.type == PurchaseType.CONSUMABLE:
                await self.store.add_coins(profile_id, purchase.game_id, purchase.coins_delta)
            elif purchase.subscription is not None:
                await self.store.upsert_subscription(profile_id, purchase.subscription)

            metrics.record_purchase(
                purchase.provider, purchase.type.value, False, purchase.coins_delta
            )
            logger.info(
                "purchase_verified",
                profile_id=profile_id,
                provider=purchase.provider,
                product_id=purchase.product_id,
                type=purchase.type.value,
                game_id=purchase.game_id,
                coins_delta=purchase.coins_delta,
                external_transaction_id=purchase.external_transaction_id,
            )
            return PurchaseResult(
                deduplicated=False,
                purchase=purchase,
                entitlements=await self.get_entitlements(profile_id),
            )

    async def apply_webhook_event(
        self, provider: str, body: Mapping[str, Any] | None
    ) -> PurchaseResult:
        """
        Apply a provider callback through the verify_purchase path.

        The body must carry profile_id and product_id. The purchase payload is
        body["payload"] when it is an object, otherwise the body itself.
        Failures propagate so the provider retries delivery.
        """
        body = body if isinstance(body, Mapping) else {}
        provider_key = str(provider or "").strip().lower()
        profile_id = str(body.get("profile_id") or "").strip()
        product_id = str(body.get("product_id") or "").strip()
        if not profile_id or not product_id:
            metrics.record_webhook(provider_key or "unknown", False)
            raise WebhookPayloadError("webhook payload requires profile_id and product_id")

        export_target = str(body.get("export_target") or "").strip()
        if not export_target:
            export_target = WEBHOOK_DEFAULT_TARGETS.get(provider_key, ExportTarget.WEB.value)
        payload = body.get("payload")
        try:
            result = await self.verify_purchase(
                profile_id=profile_id,
                provider=provider_key,
                product_id=product_id,
                payload=payload if isinstance(payload, Mapping) else body,
                export_target=export_target,
                game_id=str(body.get("game_id") or "").strip() or None,
            )
        except IapError:
            metrics.record_webhook(provider_key, False)
            raise
        metrics.record_webhook(provider_key, True)
        return result

    async def adjust_coins(
        self,
        profile_id: str,
        game_id: str,
        delta: int,
        idempotency_key: str,
        reason: str | None = None,
    ) -> AdjustmentResult:
        """
        Apply an internal coin delta once per idempotency key.

        A repeated key returns the current balance with deduplicated=True. A
        negative delta larger than the balance is rejected before the ledger
        insert, so a later retry with enough balance can still succeed.

        Raises:
            InvalidAdjustmentError: Missing ids, zero or non-integer delta
            InsufficientCoinsError: Debit exceeds the current balance
        """
        if not str(profile_id or "").strip() or not str(game_id or "").strip():
            raise InvalidAdjustmentError("profile_id and game_id are required")
        if not str(idempotency_key or "").strip():
            raise InvalidAdjustmentError("idempotency_key is required")
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidAdjustmentError("delta must be an integer")
        if delta == 0:
            raise InvalidAdjustmentError("delta must be non-zero")

        adjustment = CoinAdjustment(
            profile_id=profile_id.strip(),
            game_id=normalize_key(game_id),
            delta=delta,
            idempotency_key=idempotency_key.strip(),
            reason=(reason or "").strip() or None,
        )

        with trace_operation("adjust_coins", game_id=adjustment.game_id, delta=delta):
            existing = await self.store.get_transaction(
                INTERNAL_PROVIDER, adjustment.idempotency_key
            )
            if existing is not None:
                return await self._deduplicated_adjustment(adjustment)

            if delta < 0:
                coins = await self.store.get_coins(adjustment.profile_id)
                balance = coins.get(adjustment.game_id, 0)
                if balance + delta < 0:
                    logger.warning(
                        "coin_adjustment_insufficient",
                        profile_id=adjustment.profile_id,
                        game_id=adjustment.game_id,
                        balance=balance,
                        delta=delta,
                    )
                    raise InsufficientCoinsError(balance=balance, required=-delta)

            recorded = await self.store.record_transaction(
                INTERNAL_PROVIDER,
                adjustment.idempotency_key,
                {"type": "adjustment", "provider": INTERNAL_PROVIDER, **adjustment.to_dict()},
            )
            if not recorded.is_new:
                return await self._deduplicated_adjustment(adjustment)

            balance = await self.store.add_coins(
                adjustment.profile_id, adjustment.game_id, adjustment.delta
            )
            metrics.record_coin_adjustment(False, delta)
            logger.info(
                "coins_adjusted",
                profile_id=adjustment.profile_id,
                game_id=adjustment.game_id,
                delta=delta,
                balance=balance,
                reason=adjustment.reason,
            )
            return AdjustmentResult(
                deduplicated=False,
                adjustment=adjustment,
                balance=balance,
                entitlements=await self.get_entitlements(adjustment.profile_id),
            )

    async def _deduplicated_adjustment(self, adjustment: CoinAdjustment) -> AdjustmentResult:
        metrics.record_coin_adjustment(True, adjustment.delta)
        logger.info(
            "coin_adjustment_deduplicated",
            profile_id=adjustment.profile_id,
            idempotency_key=adjustment.idempotency_key,
        )
        entitlements = await self.get_entitlements(adjustment.profile_id)
        return AdjustmentResult(
            deduplicated=True,
            adjustment=adjustment,
            balance=entitlements.coins.get(adjustment.game_id, 0),
            entitlements=entitlements,
        )

    async def merge_profiles(
        self, primary_profile_id: str, secondary_profile_id: str
    ) -> MergeResult:
        """Move coins and subscription from the secondary profile onto the primary."""
        primary = _require(primary_profile_id, "primary_profile_id")
        secondary = _require(secondary_profile_id, "secondary_profile_id")
        with trace_operation("merge_profiles"):
            result = await self.store.merge_profiles(primary, secondary)
        metrics.record_merge(result.merged)
        logger.info(
            "profiles_merged" if result.merged else "profiles_merge_skipped",
            primary_profile_id=primary,
            secondary_profile_id=secondary,
        )
        return result
