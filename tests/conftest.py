"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fakes and fixtures for testing:
- Fake provider verifiers and a provider registry
- Ledger stores (memory, JSON file)
- Entitlement service wired to the fakes
- Session tokens and a FastAPI test client
"""

import os
import time
from collections.abc import Iterator, Mapping
from typing import Any

import pytest

# Set required environment variables BEFORE importing app modules
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-hs256-signing-32+")
os.environ.setdefault("IAP_ADMIN_KEY", "test-admin-key")
os.environ.setdefault("IAP_STORE_TYPE", "memory")
os.environ.setdefault("TRACING_ENABLED", "false")

import jwt
from fastapi import FastAPI
from fastapi.testclient import TestClient

from iap.config import settings
from iap.exceptions import PurchaseVerificationError
from iap.models.domain import VerificationRequest, VerifiedPurchase
from iap.services.entitlements import EntitlementService
from iap.services.payment_provider import (
    ProviderRegistry,
    consumable_purchase,
    subscription_purchase,
)
from iap.services.purchase_normalizer import PurchaseNormalizer
from iap.services.runtime_config import StaticRuntimeConfigProvider
from iap.store import InMemoryIapStore, JsonFileIapStore

# ============================================================================
# Provider Fakes
# ============================================================================


class FakeVerifier:
    """
    Provider adapter that trusts its payload.

    payload.transaction_id becomes the external transaction id; payload.reject
    makes verification fail; payload.expires_at drives subscriptions.
    """

    def __init__(self, provider: str) -> None:
        self.provider = provider
        self.requests: list[VerificationRequest] = []

    async def verify_purchase(self, request: VerificationRequest) -> VerifiedPurchase:
        self.requests.append(request)
        payload: Mapping[str, Any] = request.payload
        if payload.get("reject"):
            raise PurchaseVerificationError(self.provider, "rejected by fake")
        transaction_id = str(payload.get("transaction_id") or "")
        if request.catalog_entry.is_consumable:
            return consumable_purchase(request, transaction_id)
        return subscription_purchase(
            request,
            transaction_id,
            str(payload.get("subscription_id") or transaction_id),
            int(payload.get("expires_at") or 0),
        )


@pytest.fixture
def fake_verifiers() -> dict[str, FakeVerifier]:
    """One fake adapter per provider."""
    return {name: FakeVerifier(name) for name in ("apple", "google", "paypal_web")}


@pytest.fixture
def provider_registry(fake_verifiers: dict[str, FakeVerifier]) -> ProviderRegistry:
    """Registry dispatching to the fake adapters."""
    return ProviderRegistry(fake_verifiers, timeout_seconds=5.0)


@pytest.fixture
def runtime_config() -> StaticRuntimeConfigProvider:
    """Runtime config with one extra lumarush pack and per-game PayPal credentials."""
    return StaticRuntimeConfigProvider(
        {
            "lumarush": {
                "iapCatalog": {
                    "consumables": {
                        "coins_1000_lumarush": {
                            "game_id": "lumarush",
                            "coins": 1000,
                            "price": "6.99",
                        }
                    }
                },
                "iapProviderConfigs": {
                    "paypal_web": {"clientId": "game-client", "clientSecret": "game-secret"}
                },
            }
        }
    )


@pytest.fixture
def normalizer(
    provider_registry: ProviderRegistry, runtime_config: StaticRuntimeConfigProvider
) -> PurchaseNormalizer:
    """Normalizer wired to the fake adapters and static runtime config."""
    return PurchaseNormalizer(
        providers=provider_registry,
        runtime_config=runtime_config,
        static_provider_configs={"paypal_web": {"client_id": "static", "client_secret": "s"}},
    )


# ============================================================================
# Store / Service Fixtures
# ============================================================================


@pytest.fixture
def memory_store() -> InMemoryIapStore:
    """Fresh in-memory ledger."""
    return InMemoryIapStore()


@pytest.fixture
def file_store(tmp_path) -> JsonFileIapStore:
    """JSON file ledger in a temp directory."""
    return JsonFileIapStore(tmp_path / "ledger" / "iap.json")


@pytest.fixture
def entitlement_service(
    memory_store: InMemoryIapStore, normalizer: PurchaseNormalizer
) -> EntitlementService:
    """Entitlement service over the memory store and fake providers."""
    return EntitlementService(store=memory_store, normalizer=normalizer)


# ============================================================================
# Auth Fixtures
# ============================================================================


def make_session_token(
    subject: str = "profile-1",
    expires_in: int = 3600,
    **claims: Any,
) -> str:
    """Sign a session token the way the identity gateway does."""
    now = int(time.time())
    body: dict[str, Any] = {
        "sub": subject,
        "iss": settings.session_issuer,
        "aud": settings.session_audience,
        "iat": now,
        "exp": now + expires_in,
        **claims,
    }
    return jwt.encode(body, settings.session_secret, algorithm="HS256")


@pytest.fixture
def token_factory():
    """Signs session tokens with custom claims."""
    return make_session_token


@pytest.fixture
def session_token() -> str:
    """Valid session token for profile-1."""
    return make_session_token()


@pytest.fixture
def auth_headers(session_token: str) -> dict[str, str]:
    """Bearer header for profile-1."""
    return {"Authorization": f"Bearer {session_token}"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    """Header for internal routes."""
    return {"x-admin-key": settings.iap_admin_key}


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app() -> FastAPI:
    """FastAPI app (lifespan is not run by the fixtures)."""
    from iap.main import app as main_app

    return main_app


@pytest.fixture
def client(app: FastAPI, entitlement_service: EntitlementService) -> Iterator[TestClient]:
    """Test client with the fake-backed service installed on app.state."""
    app.state.entitlement_service = entitlement_service
    yield TestClient(app)
    del app.state.entitlement_service
