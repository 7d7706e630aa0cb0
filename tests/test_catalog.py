"""
Tests for the product catalog and per-game overrides.
"""

from decimal import Decimal

import pytest

from iap.models.api import PurchaseType
from iap.models.domain import CatalogEntry
from iap.services.catalog import (
    DEFAULT_CATALOG,
    create_catalog,
    normalize_product_id,
    resolve_catalog_entry,
)


class TestNormalizeProductId:
    """Tests for normalize_product_id."""

    def test_trims_and_lowercases(self):
        """Whitespace is stripped and case folded."""
        assert normalize_product_id("  Coins_100_LumaRush ") == "coins_100_lumarush"

    def test_none_becomes_empty(self):
        """None normalizes to the empty string."""
        assert normalize_product_id(None) == ""


class TestDefaultCatalog:
    """Tests for the base catalog."""

    def test_lumarush_packs(self):
        """lumarush has 100, 500 and 550 coin packs."""
        coins = {
            entry.product_id: entry.coins
            for entry in DEFAULT_CATALOG.consumables.values()
            if entry.game_id == "lumarush"
        }
        assert coins == {
            "coins_100_lumarush": 100,
            "coins_500_lumarush": 500,
            "coins_550_lumarush": 550,
        }

    def test_color_crunch_pack_price(self):
        """Prices are decimals in USD."""
        entry = DEFAULT_CATALOG.consumables["coins_500_color_crunch"]
        assert entry.price == Decimal("3.99")
        assert entry.currency == "USD"
        assert entry.game_id == "color_crunch"

    def test_subscriptions_grant_no_ads(self):
        """Both plans map to the no_ads entitlement."""
        for entry in DEFAULT_CATALOG.subscriptions.values():
            assert entry.type == PurchaseType.SUBSCRIPTION
            assert entry.entitlement_key == "no_ads"
        assert {e.plan for e in DEFAULT_CATALOG.subscriptions.values()} == {"monthly", "yearly"}


class TestCatalogEntry:
    """Tests for CatalogEntry validation."""

    def test_consumable_requires_game(self):
        """A coin pack without a game is rejected."""
        with pytest.raises(ValueError, match="requires game_id"):
            CatalogEntry(type=PurchaseType.CONSUMABLE, product_id="coins_x", coins=10)

    def test_consumable_requires_positive_coins(self):
        """Zero coins is rejected."""
        with pytest.raises(ValueError, match="positive"):
            CatalogEntry(
                type=PurchaseType.CONSUMABLE, product_id="coins_x", game_id="g", coins=0
            )

    def test_subscription_requires_entitlement(self):
        """A plan without an entitlement key is rejected."""
        with pytest.raises(ValueError, match="entitlement_key"):
            CatalogEntry(type=PurchaseType.SUBSCRIPTION, product_id="plan_x")


class TestCreateCatalog:
    """Tests for create_catalog."""

    def test_no_overrides_returns_base(self):
        """None or empty overrides return the base catalog itself."""
        assert create_catalog(None) is DEFAULT_CATALOG
        assert create_catalog({}) is DEFAULT_CATALOG

    def test_adds_consumable(self):
        """Override entries are added with normalized ids."""
        catalog = create_catalog(
            {"consumables": {"Coins_1000_LumaRush": {"gameId": "LumaRush", "coins": 1000}}}
        )
        entry = catalog.consumables["coins_1000_lumarush"]
        assert entry.game_id == "lumarush"
        assert entry.coins == 1000
        assert "coins_100_lumarush" in catalog.consumables

    def test_replaces_base_entry(self):
        """An override with a base id replaces the base entry."""
        catalog = create_catalog(
            {"consumables": {"coins_100_lumarush": {"game_id": "lumarush", "coins": 120}}}
        )
        assert catalog.consumables["coins_100_lumarush"].coins == 120
        assert DEFAULT_CATALOG.consumables["coins_100_lumarush"].coins == 100

    def test_adds_subscription(self):
        """Subscription overrides accept camelCase fields."""
        catalog = create_catalog(
            {"subscriptions": {"no_ads_weekly": {"entitlementKey": "no_ads", "plan": "weekly"}}}
        )
        assert catalog.subscriptions["no_ads_weekly"].plan == "weekly"

    def test_invalid_entries_are_skipped(self):
        """Malformed override entries are dropped without failing."""
        catalog = create_catalog(
            {
                "consumables": {
                    "bad_no_game": {"coins": 10},
                    "bad_coins": {"game_id": "g", "coins": "lots"},
                    "not_a_mapping": 5,
                    "": {"game_id": "g", "coins": 1},
                },
                "subscriptions": ["not", "a", "mapping"],
            }
        )
        assert "bad_no_game" not in catalog.consumables
        assert "bad_coins" not in catalog.consumables
        assert "not_a_mapping" not in catalog.consumables
        assert catalog.subscriptions == DEFAULT_CATALOG.subscriptions

    def test_bad_price_is_dropped(self):
        """An unparseable price leaves the entry without a price."""
        catalog = create_catalog(
            {"consumables": {"coins_5_g": {"game_id": "g", "coins": 5, "price": "free"}}}
        )
        assert catalog.consumables["coins_5_g"].price is None


class TestResolveCatalogEntry:
    """Tests for resolve_catalog_entry."""

    def test_resolves_consumable(self):
        """Lookup is case-insensitive."""
        entry = resolve_catalog_entry(DEFAULT_CATALOG, " COINS_500_COLOR_CRUNCH ")
        assert entry is not None
        assert entry.coins == 500

    def test_resolves_subscription(self):
        """Subscriptions are found after consumables."""
        entry = resolve_catalog_entry(DEFAULT_CATALOG, "no_ads_yearly")
        assert entry is not None
        assert entry.is_consumable is False

    def test_unknown_returns_none(self):
        """Unknown and empty ids resolve to None."""
        assert resolve_catalog_entry(DEFAULT_CATALOG, "nope") is None
        assert resolve_catalog_entry(DEFAULT_CATALOG, "") is None
