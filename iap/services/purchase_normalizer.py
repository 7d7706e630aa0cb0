"""
Purchase Normalization & Routing.

Turns a raw purchase request into a NormalizedPurchase. Checks run in a fixed
order and each one is a hard failure:

1. provider is a known provider
2. export target is known and allows the provider
3. product resolves in the catalog (base catalog + per-game overrides)
4. a consumable belongs to the requested game
5. the provider verifies the payload
6. a stable external transaction id is derived

Nothing reaches a provider until steps 1-4 pass.
"""

import hashlib
import json
import time
from collections.abc import Mapping
from typing import Any

from structlog import get_logger

from iap.exceptions import (
    InputValidationError,
    ProductGameMismatchError,
    ProviderNotAllowedError,
    UnknownProductError,
    UnsupportedExportTargetError,
    UnsupportedProviderError,
)
from iap.models.api import ExportTarget, Provider, PurchaseType
from iap.models.domain import (
    IapRuntimeConfig,
    NormalizedPurchase,
    PurchaseInput,
    VerificationRequest,
)
from iap.services.catalog import create_catalog, normalize_product_id, resolve_catalog_entry
from iap.services.payment_provider import ProviderRegistry
from iap.services.runtime_config import NoopRuntimeConfigProvider, RuntimeConfigProvider

logger = get_logger(__name__)

DEFAULT_EXPORT_TARGET = ExportTarget.WEB.value

# Export target -> providers allowed to verify purchases made there
EXPORT_TARGET_PROVIDERS: dict[str, frozenset[str]] = {
    ExportTarget.IOS.value: frozenset({Provider.APPLE.value}),
    ExportTarget.ANDROID.value: frozenset({Provider.GOOGLE.value}),
    ExportTarget.POKI.value: frozenset({Provider.PAYPAL_WEB.value}),
    ExportTarget.CRAZYGAMES.value: frozenset({Provider.PAYPAL_WEB.value}),
    ExportTarget.WEB.value: frozenset({Provider.PAYPAL_WEB.value}),
}

KNOWN_PROVIDERS = frozenset(provider.value for provider in Provider)

# Payload fields tried, in order, when the provider returns no transaction id
FALLBACK_TRANSACTION_FIELDS = ("external_transaction_id", "transaction_id", "order_id", "id")


def normalize_provider(provider: Any) -> str:
    """Validate and normalize a provider key."""
    normalized = str(provider or "").strip().lower()
    if not normalized:
        raise InputValidationError("provider is required")
    if normalized not in KNOWN_PROVIDERS:
        raise UnsupportedProviderError(normalized)
    return normalized


def normalize_export_target(value: Any) -> str:
    """Validate an export target; empty means web."""
    normalized = str(value or "").strip().lower() or DEFAULT_EXPORT_TARGET
    if normalized not in EXPORT_TARGET_PROVIDERS:
        raise UnsupportedExportTargetError(normalized)
    return normalized


def enforce_provider_for_target(provider: str, export_target: str) -> None:
    """Raise ProviderNotAllowedError unless the target allows the provider."""
    if provider not in EXPORT_TARGET_PROVIDERS.get(export_target, frozenset()):
        raise ProviderNotAllowedError(provider, export_target)


def payload_hash(provider: str, product_id: str, payload: Mapping[str, Any]) -> str:
    """
    Deterministic 32-hex-char id for payloads without a transaction id.

    Payload keys are sorted so equal payloads always hash equally.
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"{provider}:{product_id}:{canonical}".encode()).hexdigest()
    return digest[:32]


def derive_transaction_id(
    verified_id: str | None, provider: str, product_id: str, payload: Mapping[str, Any]
) -> str:
    """Verified id, else a payload id field, else the payload hash."""
    candidate = str(verified_id or "").strip()
    if candidate:
        return candidate
    for field_name in FALLBACK_TRANSACTION_FIELDS:
        value = payload.get(field_name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return payload_hash(provider, product_id, payload)


def merge_provider_config(
    static: Mapping[str, str] | None, runtime: Mapping[str, str] | None
) -> dict[str, str]:
    """Overlay non-empty runtime credential values on the static defaults."""
    merged = {key: value for key, value in (static or {}).items() if value is not None}
    for key, value in (runtime or {}).items():
        if value is not None and str(value).strip():
            merged[key] = str(value)
    return merged


class PurchaseNormalizer:
    """Validates routing, resolves the catalog and verifies with the provider."""

    def __init__(
        self,
        providers: ProviderRegistry,
        runtime_config: RuntimeConfigProvider | None = None,
        static_provider_configs: Mapping[str, Mapping[str, str]] | None = None,
        environment: str = "prod",
    ) -> None:
        self.providers = providers
        self.runtime_config = runtime_config or NoopRuntimeConfigProvider()
        self.static_provider_configs = dict(static_provider_configs or {})
        self.environment = environment

    async def _load_runtime_config(self, game_id: str | None) -> IapRuntimeConfig | None:
        if not game_id:
            return None
        return await self.runtime_config.get_iap_runtime_config(game_id, self.environment)

    async def normalize(self, purchase: PurchaseInput) -> NormalizedPurchase:
        """
        Normalize and verify a purchase.

        Raises:
            InputValidationError: Unknown provider/target/product or missing field
            PolicyViolationError: Provider not allowed for target, product of another game
            PurchaseVerificationError: Provider rejected the payload
            RuntimeConfigError: Per-game config could not be loaded
        """
        payload: Mapping[str, Any] = (
            purchase.payload if isinstance(purchase.payload, Mapping) else {}
        )

        provider = normalize_provider(purchase.provider)
        export_target = normalize_export_target(
            purchase.export_target or payload.get("export_target")
        )
        enforce_provider_for_target(provider, export_target)

        product_id = normalize_product_id(purchase.product_id)
        if not product_id:
            raise InputValidationError("product_id is required")

        game_id = str(purchase.game_id or "").strip().lower() or None
        runtime = await self._load_runtime_config(game_id)
        catalog = create_catalog(runtime.catalog if runtime else None)
        entry = resolve_catalog_entry(catalog, product_id)
        if entry is None:
            raise UnknownProductError(product_id)

        if game_id and entry.is_consumable and entry.game_id != game_id:
            raise ProductGameMismatchError(product_id, game_id, entry.game_id or "")

        provider_config = merge_provider_config(
            self.static_provider_configs.get(provider),
            runtime.provider_configs.get(provider) if runtime else None,
        )
        now_seconds = purchase.now_seconds or int(time.time())

        verified = await self.providers.verify_purchase(
            VerificationRequest(
                provider=provider,
                product_id=product_id,
                payload=payload,
                catalog_entry=entry,
                now_seconds=now_seconds,
                provider_config=provider_config,
                game_id=game_id,
            )
        )

        external_transaction_id = derive_transaction_id(
            verified.external_transaction_id, provider, product_id, payload
        )
        purchase_type = verified.type or entry.type
        if purchase_type == PurchaseType.CONSUMABLE:
            resolved_game_id = verified.game_id or entry.game_id or ""
            coins_delta = max(int(verified.coins_delta or 0), 0)
        else:
            resolved_game_id = verified.game_id or ""
            coins_delta = 0

        logger.debug(
            "purchase_normalized",
            provider=provider,
            product_id=product_id,
            export_target=export_target,
            external_transaction_id=external_transaction_id,
        )

        return NormalizedPurchase(
            provider=provider,
            external_transaction_id=external_transaction_id,
            type=purchase_type,
            product_id=product_id,
            game_id=resolved_game_id,
            coins_delta=coins_delta,
            subscription=verified.subscription,
            export_target=export_target,
        )
