"""
API Models - Pydantic models for request/response validation.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class PurchaseType(str, Enum):
    """Catalog entry / purchase type enumeration."""

    CONSUMABLE = "consumable"
    SUBSCRIPTION = "subscription"


class Provider(str, Enum):
    """Payment providers that can verify purchases."""

    APPLE = "apple"
    GOOGLE = "google"
    PAYPAL_WEB = "paypal_web"


class ExportTarget(str, Enum):
    """Distribution channel a game build runs under."""

    IOS = "ios"
    ANDROID = "android"
    POKI = "poki"
    CRAZYGAMES = "crazygames"
    WEB = "web"


# Provider tag used for internal (admin) coin adjustments in the ledger
INTERNAL_PROVIDER = "internal"


# ============================================================================
# Purchase Models
# ============================================================================


class VerifyPurchaseRequest(BaseModel):
    """POST /v1/iap/verify request body."""

    provider: str = Field(..., min_length=1, max_length=50)
    product_id: str = Field(..., min_length=1, max_length=255)
    export_target: str | None = Field(None, max_length=50)
    game_id: str | None = Field(None, max_length=255)
    payload: dict[str, Any] = Field(default_factory=dict)


class NoAdsEntitlement(BaseModel):
    """Subscription entitlement as returned to clients."""

    active: bool
    status: str
    expires_at: int | None = None


class CoinBalanceItem(BaseModel):
    """Balance for one game."""

    balance: int = Field(..., ge=0)


class EntitlementsResponse(BaseModel):
    """GET /v1/iap/entitlements response."""

    request_id: str | None = None
    profile_id: str
    no_ads: NoAdsEntitlement
    coins: dict[str, CoinBalanceItem]


class SubscriptionItem(BaseModel):
    """Verified subscription attached to a purchase."""

    provider: str
    external_subscription_id: str
    status: str
    active: bool
    expires_at: int | None = None


class PurchaseItem(BaseModel):
    """Normalized purchase as returned to clients."""

    provider: str
    external_transaction_id: str
    type: PurchaseType
    product_id: str
    game_id: str
    coins_delta: int = Field(..., ge=0)
    subscription: SubscriptionItem | None = None
    export_target: str


class VerifyPurchaseResponse(BaseModel):
    """POST /v1/iap/verify and webhook response."""

    request_id: str | None = None
    deduplicated: bool
    purchase: PurchaseItem
    entitlements: EntitlementsResponse


# ============================================================================
# Internal Models
# ============================================================================


class MergeProfileRequest(BaseModel):
    """POST /v1/iap/internal/merge-profile request body."""

    primary_profile_id: str = Field(..., min_length=1, max_length=255)
    secondary_profile_id: str = Field(..., min_length=1, max_length=255)

    @field_validator("primary_profile_id", "secondary_profile_id")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Profile ids must contain non-whitespace characters."""
        if not v.strip():
            raise ValueError("profile id cannot be blank")
        return v.strip()


class MergeProfileResponse(BaseModel):
    """POST /v1/iap/internal/merge-profile response."""

    request_id: str | None = None
    merged: bool


class AdjustCoinsRequest(BaseModel):
    """POST /v1/iap/internal/coins/adjust request body."""

    profile_id: str = Field(..., min_length=1, max_length=255)
    game_id: str = Field(..., min_length=1, max_length=255)
    delta: int
    idempotency_key: str = Field(..., min_length=1, max_length=255)
    reason: str | None = Field(None, max_length=500)


class AdjustmentItem(BaseModel):
    """Applied coin adjustment."""

    profile_id: str
    game_id: str
    delta: int
    idempotency_key: str
    reason: str | None = None


class AdjustCoinsResponse(BaseModel):
    """POST /v1/iap/internal/coins/adjust response."""

    request_id: str | None = None
    deduplicated: bool
    adjustment: AdjustmentItem
    balance: int
    entitlements: EntitlementsResponse


class HealthResponse(BaseModel):
    """GET /healthz response."""

    ok: bool
    request_id: str | None = None
    store: str
