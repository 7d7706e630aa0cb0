"""
Tests for API Routes.

Runs the FastAPI app with TestClient; the entitlement service on app.state is
backed by the in-memory store and fake provider adapters.
"""

from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
import structlog
from fastapi import HTTPException

from iap.api.routes import raise_http_error
from iap.config import settings
from iap.exceptions import (
    InsufficientCoinsError,
    ProviderNotAllowedError,
    PurchaseVerificationError,
    RuntimeConfigError,
    StorageError,
    UnknownProductError,
)

VERIFY_BODY = {
    "provider": "google",
    "product_id": "coins_500_color_crunch",
    "export_target": "android",
    "payload": {"transaction_id": "tx1"},
}

# ============================================================================
# Error mapping
# ============================================================================


class TestRaiseHttpError:
    """Tests for raise_http_error."""

    @pytest.mark.parametrize(
        ("exc", "status"),
        [
            (UnknownProductError("x"), 400),
            (ProviderNotAllowedError("apple", "android"), 403),
            (PurchaseVerificationError("apple", "bad"), 402),
            (InsufficientCoinsError(balance=0, required=5), 409),
            (StorageError("down"), 503),
            (RuntimeConfigError("down"), 503),
        ],
    )
    def test_status_mapping(self, exc, status):
        """Each error category maps to one status code."""
        with pytest.raises(HTTPException) as exc_info:
            raise_http_error(exc, "test")
        assert exc_info.value.status_code == status
        assert exc_info.value.detail == str(exc)


# ============================================================================
# Health
# ============================================================================


class TestHealth:
    """Tests for GET /healthz."""

    def test_health(self, client):
        """Health reports ok and echoes the request id."""
        response = client.get("/healthz", headers={"X-Request-ID": "req-abc"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "request_id": "req-abc", "store": "memory"}
        assert response.headers["x-request-id"] == "req-abc"

    def test_generated_request_id(self, client):
        """A request id is generated when none is sent."""
        response = client.get("/healthz")
        assert response.headers["x-request-id"].startswith("req_")

    def test_request_id_bound_while_logging(self, client, monkeypatch):
        """Request logs carry the request id through the structlog context."""
        bound: list[dict] = []
        request_logger = MagicMock()
        request_logger.info.side_effect = lambda *args, **kwargs: bound.append(
            structlog.contextvars.get_contextvars()
        )
        monkeypatch.setattr("iap.main.logger", request_logger)

        client.get("/healthz", headers={"X-Request-ID": "req-ctx"})

        assert bound
        assert bound[-1]["request_id"] == "req-ctx"


# ============================================================================
# Player routes
# ============================================================================


class TestSessionAuth:
    """Tests for bearer session authentication."""

    def test_missing_token(self, client):
        """No bearer token is 401."""
        response = client.get("/v1/iap/entitlements")
        assert response.status_code == 401

    def test_bad_signature(self, client):
        """A token signed with another secret is 401."""
        token = jwt.encode(
            {"sub": "p", "exp": 9_999_999_999}, "another-secret-of-32-bytes-or-more!!", "HS256"
        )
        response = client.get(
            "/v1/iap/entitlements", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401

    def test_expired_token(self, client, token_factory):
        """Expiry beyond the clock skew is 401."""
        token = token_factory(expires_in=-(settings.clock_skew_seconds + 60))
        response = client.get(
            "/v1/iap/entitlements", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401

    def test_nakama_user_id_preferred(self, client, token_factory):
        """nakama_user_id wins over sub as the profile id."""
        token = token_factory(subject="sub-1", nakama_user_id="nk-1")
        response = client.get(
            "/v1/iap/entitlements", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 200
        assert response.json()["profile_id"] == "nk-1"


class TestEntitlementsRoute:
    """Tests for GET /v1/iap/entitlements."""

    def test_empty_profile(self, client, auth_headers):
        """A new profile has no coins and no_ads off."""
        response = client.get("/v1/iap/entitlements", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["profile_id"] == "profile-1"
        assert body["coins"] == {}
        assert body["no_ads"]["active"] is False

    def test_storage_failure_is_503(self, app, client, auth_headers):
        """Backend failures are 503."""
        service = AsyncMock()
        service.get_entitlements.side_effect = StorageError("down")
        app.state.entitlement_service = service

        response = client.get("/v1/iap/entitlements", headers=auth_headers)
        assert response.status_code == 503


class TestVerifyRoute:
    """Tests for POST /v1/iap/verify."""

    def test_verify_and_dedup(self, client, auth_headers):
        """First call credits, second is deduplicated."""
        first = client.post("/v1/iap/verify", json=VERIFY_BODY, headers=auth_headers)
        second = client.post("/v1/iap/verify", json=VERIFY_BODY, headers=auth_headers)

        assert first.status_code == 200
        assert first.json()["deduplicated"] is False
        assert first.json()["entitlements"]["coins"] == {"color_crunch": {"balance": 500}}
        assert second.json()["deduplicated"] is True
        assert second.json()["entitlements"]["coins"] == {"color_crunch": {"balance": 500}}

    def test_export_target_header(self, client, auth_headers):
        """x-export-target is used when the body has none."""
        body = {**VERIFY_BODY, "export_target": None}
        response = client.post(
            "/v1/iap/verify",
            json=body,
            headers={**auth_headers, "x-export-target": "android"},
        )
        assert response.status_code == 200
        assert response.json()["purchase"]["export_target"] == "android"

    def test_policy_violation_is_403(self, client, auth_headers):
        """Google on ios is forbidden."""
        body = {**VERIFY_BODY, "export_target": "ios"}
        response = client.post("/v1/iap/verify", json=body, headers=auth_headers)
        assert response.status_code == 403

    def test_unknown_product_is_400(self, client, auth_headers):
        """Unknown products are bad requests."""
        body = {**VERIFY_BODY, "product_id": "coins_1_nothing"}
        response = client.post("/v1/iap/verify", json=body, headers=auth_headers)
        assert response.status_code == 400

    def test_verification_failure_is_402(self, client, auth_headers):
        """Provider rejection is 402."""
        body = {**VERIFY_BODY, "payload": {"reject": True}}
        response = client.post("/v1/iap/verify", json=body, headers=auth_headers)
        assert response.status_code == 402

    def test_schema_error_is_422(self, client, auth_headers):
        """Missing required fields fail request validation."""
        response = client.post("/v1/iap/verify", json={"provider": "google"}, headers=auth_headers)
        assert response.status_code == 422


# ============================================================================
# Webhooks
# ============================================================================


class TestWebhookRoute:
    """Tests for POST /v1/iap/webhook/{provider}."""

    def test_accepted(self, client):
        """A valid callback is applied and returns 202."""
        response = client.post(
            "/v1/iap/webhook/google",
            json={
                "profile_id": "profile-9",
                "product_id": "coins_100_lumarush",
                "payload": {"transaction_id": "wh-1"},
            },
        )
        assert response.status_code == 202
        assert response.json()["entitlements"]["coins"] == {"lumarush": {"balance": 100}}

    def test_paypal_path(self, client):
        """/webhook/paypal maps to the paypal_web provider."""
        response = client.post(
            "/v1/iap/webhook/paypal",
            json={"profile_id": "p", "product_id": "coins_100_lumarush", "order_id": "O-1"},
        )
        assert response.status_code == 202
        assert response.json()["purchase"]["provider"] == "paypal_web"

    def test_missing_fields_is_400(self, client):
        """Callbacks without profile_id/product_id are rejected for redelivery."""
        response = client.post("/v1/iap/webhook/apple", json={"product_id": "no_ads_monthly"})
        assert response.status_code == 400

    def test_unknown_provider_is_404(self, client):
        """Unknown provider paths do not exist."""
        response = client.post("/v1/iap/webhook/stripe", json={})
        assert response.status_code == 404


# ============================================================================
# Internal routes
# ============================================================================


class TestInternalRoutes:
    """Tests for the admin-key protected routes."""

    def test_adjust_coins(self, client, admin_headers):
        """Credits apply once per idempotency key."""
        body = {"profile_id": "p", "game_id": "lumarush", "delta": 30, "idempotency_key": "k1"}
        first = client.post("/v1/iap/internal/coins/adjust", json=body, headers=admin_headers)
        second = client.post("/v1/iap/internal/coins/adjust", json=body, headers=admin_headers)

        assert first.status_code == 200
        assert first.json()["balance"] == 30
        assert second.json()["deduplicated"] is True
        assert second.json()["balance"] == 30

    def test_overdraw_is_409(self, client, admin_headers):
        """Debits beyond the balance conflict."""
        body = {"profile_id": "p", "game_id": "lumarush", "delta": -30, "idempotency_key": "k2"}
        response = client.post("/v1/iap/internal/coins/adjust", json=body, headers=admin_headers)
        assert response.status_code == 409

    def test_zero_delta_is_400(self, client, admin_headers):
        """A zero delta is invalid."""
        body = {"profile_id": "p", "game_id": "lumarush", "delta": 0, "idempotency_key": "k3"}
        response = client.post("/v1/iap/internal/coins/adjust", json=body, headers=admin_headers)
        assert response.status_code == 400

    def test_merge_profile(self, client, admin_headers):
        """Merging moves coins to the primary profile."""
        client.post(
            "/v1/iap/internal/coins/adjust",
            json={"profile_id": "b", "game_id": "lumarush", "delta": 50, "idempotency_key": "m"},
            headers=admin_headers,
        )
        response = client.post(
            "/v1/iap/internal/merge-profile",
            json={"primary_profile_id": "a", "secondary_profile_id": "b"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["merged"] is True

    def test_wrong_key_is_401(self, client):
        """A wrong admin key is rejected."""
        response = client.post(
            "/v1/iap/internal/merge-profile",
            json={"primary_profile_id": "a", "secondary_profile_id": "b"},
            headers={"x-admin-key": "wrong"},
        )
        assert response.status_code == 401

    def test_disabled_without_admin_key(self, client, admin_headers, monkeypatch):
        """Internal routes are hidden when no admin key is configured."""
        monkeypatch.setattr(settings, "iap_admin_key", "")
        response = client.post(
            "/v1/iap/internal/merge-profile",
            json={"primary_profile_id": "a", "secondary_profile_id": "b"},
            headers=admin_headers,
        )
        assert response.status_code == 404
