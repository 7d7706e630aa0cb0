"""
Catalog Resolver - Product catalog with per-game overrides.

The base catalog ships with the service. Per-game runtime config may add or
replace entries; malformed override data is dropped, never fatal.
"""

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from structlog import get_logger

from iap.models.api import PurchaseType
from iap.models.domain import Catalog, CatalogEntry

logger = get_logger(__name__)


def normalize_product_id(product_id: Any) -> str:
    """Trim and lowercase a product id."""
    return str(product_id or "").strip().lower()


def _entry(
    product_id: str,
    *,
    game_id: str,
    coins: int,
    price: str,
    currency: str = "USD",
) -> CatalogEntry:
    return CatalogEntry(
        type=PurchaseType.CONSUMABLE,
        product_id=product_id,
        game_id=game_id,
        coins=coins,
        price=Decimal(price),
        currency=currency,
    )


def _plan(product_id: str, plan: str) -> CatalogEntry:
    return CatalogEntry(
        type=PurchaseType.SUBSCRIPTION,
        product_id=product_id,
        entitlement_key="no_ads",
        plan=plan,
    )


DEFAULT_CATALOG = Catalog(
    consumables={
        "coins_100_lumarush": _entry(
            "coins_100_lumarush", game_id="lumarush", coins=100, price="0.99"
        ),
        "coins_500_lumarush": _entry(
            "coins_500_lumarush", game_id="lumarush", coins=500, price="3.99"
        ),
        "coins_550_lumarush": _entry(
            "coins_550_lumarush", game_id="lumarush", coins=550, price="3.99"
        ),
        "coins_100_color_crunch": _entry(
            "coins_100_color_crunch", game_id="color_crunch", coins=100, price="0.99"
        ),
        "coins_500_color_crunch": _entry(
            "coins_500_color_crunch", game_id="color_crunch", coins=500, price="3.99"
        ),
    },
    subscriptions={
        "no_ads_monthly": _plan("no_ads_monthly", "monthly"),
        "no_ads_yearly": _plan("no_ads_yearly", "yearly"),
    },
)


def _parse_consumable(product_id: str, raw: Mapping[str, Any]) -> CatalogEntry:
    price = raw.get("price")
    try:
        parsed_price = Decimal(str(price)) if price is not None else None
    except InvalidOperation:
        parsed_price = None
    return CatalogEntry(
        type=PurchaseType.CONSUMABLE,
        product_id=product_id,
        game_id=str(raw.get("game_id") or raw.get("gameId") or "").strip().lower() or None,
        coins=int(raw.get("coins") or 0),
        price=parsed_price,
        currency=str(raw.get("currency") or "USD"),
    )


def _parse_subscription(product_id: str, raw: Mapping[str, Any]) -> CatalogEntry:
    return CatalogEntry(
        type=PurchaseType.SUBSCRIPTION,
        product_id=product_id,
        entitlement_key=str(raw.get("entitlement_key") or raw.get("entitlementKey") or "")
        or None,
        plan=str(raw.get("plan") or "") or None,
    )


def _merge_section(
    base: Mapping[str, CatalogEntry],
    overrides: Any,
    parse: Any,
    section: str,
) -> dict[str, CatalogEntry]:
    merged = dict(base)
    if not isinstance(overrides, Mapping):
        return merged
    for raw_id, raw in overrides.items():
        product_id = normalize_product_id(raw_id)
        if not product_id or not isinstance(raw, Mapping):
            continue
        try:
            merged[product_id] = parse(product_id, raw)
        except (TypeError, ValueError) as exc:
            logger.warning(
                "catalog_override_skipped",
                section=section,
                product_id=product_id,
                error=str(exc),
            )
    return merged


def create_catalog(overrides: Mapping[str, Any] | None = None) -> Catalog:
    """
    Build a catalog from the base catalog plus overrides.

    Overrides use the sections ``consumables`` and ``subscriptions``, each a
    mapping of product id to entry fields. Override entries replace base
    entries with the same id. Sections or entries that are not mappings, or
    that fail validation, are ignored.
    """
    if not isinstance(overrides, Mapping) or not overrides:
        return DEFAULT_CATALOG
    return Catalog(
        consumables=_merge_section(
            DEFAULT_CATALOG.consumables,
            overrides.get("consumables"),
            _parse_consumable,
            "consumables",
        ),
        subscriptions=_merge_section(
            DEFAULT_CATALOG.subscriptions,
            overrides.get("subscriptions"),
            _parse_subscription,
            "subscriptions",
        ),
    )


def resolve_catalog_entry(catalog: Catalog, product_id: Any) -> CatalogEntry | None:
    """Look up a product, consumables first. Returns None when absent."""
    key = normalize_product_id(product_id)
    if not key:
        return None
    return catalog.consumables.get(key) or catalog.subscriptions.get(key)
