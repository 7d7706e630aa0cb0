"""
API Routes - FastAPI endpoints for purchase verification and entitlements.

Routes are thin: they authenticate, call EntitlementService, and translate
domain errors to status codes.
"""

from typing import Any, NoReturn

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request, status
from structlog import get_logger

from iap.api.dependencies import (
    SessionIdentity,
    get_entitlement_service,
    get_request_id,
    get_session_identity,
    require_admin_key,
)
from iap.config import settings
from iap.exceptions import (
    IapError,
    InputValidationError,
    InsufficientCoinsError,
    PolicyViolationError,
    PurchaseVerificationError,
    RuntimeConfigError,
    StorageError,
)
from iap.models.api import (
    AdjustCoinsRequest,
    AdjustCoinsResponse,
    EntitlementsResponse,
    HealthResponse,
    MergeProfileRequest,
    MergeProfileResponse,
    Provider,
    VerifyPurchaseRequest,
    VerifyPurchaseResponse,
)
from iap.observability.metrics import metrics
from iap.services.entitlements import EntitlementService

logger = get_logger(__name__)

router = APIRouter()

# Webhook path segment -> provider key
WEBHOOK_PROVIDERS: dict[str, str] = {
    "apple": Provider.APPLE.value,
    "google": Provider.GOOGLE.value,
    "paypal": Provider.PAYPAL_WEB.value,
}


def raise_http_error(exc: IapError, operation: str) -> NoReturn:
    """Translate a domain error into an HTTPException."""
    metrics.record_error(type(exc).__name__, operation)
    if isinstance(exc, InputValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, PolicyViolationError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, PurchaseVerificationError):
        code = status.HTTP_402_PAYMENT_REQUIRED
    elif isinstance(exc, InsufficientCoinsError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, (StorageError, RuntimeConfigError)):
        logger.error("dependency_unavailable", operation=operation, error=str(exc))
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        logger.error("unmapped_domain_error", operation=operation, error=str(exc))
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    raise HTTPException(status_code=code, detail=str(exc)) from exc


@router.get("/healthz", response_model=HealthResponse)
async def health(request_id: str | None = Depends(get_request_id)) -> HealthResponse:
    """Liveness probe."""
    return HealthResponse(ok=True, request_id=request_id, store=settings.store_type)


@router.get("/v1/iap/entitlements", response_model=EntitlementsResponse)
async def get_entitlements(
    identity: SessionIdentity = Depends(get_session_identity),
    service: EntitlementService = Depends(get_entitlement_service),
    request_id: str | None = Depends(get_request_id),
) -> EntitlementsResponse:
    """
    Current coins and no_ads state of the session's profile.

    Auth: Bearer {session_token}
    """
    try:
        snapshot = await service.get_entitlements(identity.profile_id)
    except IapError as exc:
        raise_http_error(exc, "get_entitlements")
    return EntitlementsResponse.model_validate({"request_id": request_id, **snapshot.to_dict()})


@router.post("/v1/iap/verify", response_model=VerifyPurchaseResponse)
async def verify_purchase(
    body: VerifyPurchaseRequest,
    identity: SessionIdentity = Depends(get_session_identity),
    service: EntitlementService = Depends(get_entitlement_service),
    request_id: str | None = Depends(get_request_id),
    x_export_target: str | None = Header(None),
) -> VerifyPurchaseResponse:
    """
    Verify a purchase for the session's profile and apply it once.

    Retrying the same purchase returns deduplicated=true and leaves balances
    unchanged.

    Auth: Bearer {session_token}
    """
    try:
        result = await service.verify_purchase(
            profile_id=identity.profile_id,
            provider=body.provider,
            product_id=body.product_id,
            payload=body.payload,
            export_target=body.export_target or x_export_target,
            game_id=body.game_id,
        )
    except IapError as exc:
        raise_http_error(exc, "verify_purchase")
    return VerifyPurchaseResponse.model_validate({"request_id": request_id, **result.to_dict()})


@router.post(
    "/v1/iap/webhook/{provider_path}",
    response_model=VerifyPurchaseResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def provider_webhook(
    provider_path: str,
    body: dict[str, Any] = Body(...),
    service: EntitlementService = Depends(get_entitlement_service),
    request_id: str | None = Depends(get_request_id),
    x_export_target: str | None = Header(None),
) -> VerifyPurchaseResponse:
    """
    Ingest a provider callback (apple, google, paypal).

    Any failure returns a non-2xx status so the provider redelivers.
    """
    provider = WEBHOOK_PROVIDERS.get(provider_path.strip().lower())
    if provider is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Route not found")

    event = dict(body)
    if not event.get("export_target") and x_export_target:
        event["export_target"] = x_export_target

    try:
        result = await service.apply_webhook_event(provider, event)
    except IapError as exc:
        logger.warning("webhook_rejected", provider=provider, error=str(exc))
        raise_http_error(exc, "webhook")
    return VerifyPurchaseResponse.model_validate({"request_id": request_id, **result.to_dict()})


@router.post(
    "/v1/iap/internal/merge-profile",
    response_model=MergeProfileResponse,
    dependencies=[Depends(require_admin_key)],
)
async def merge_profile(
    body: MergeProfileRequest,
    service: EntitlementService = Depends(get_entitlement_service),
    request_id: str | None = Depends(get_request_id),
) -> MergeProfileResponse:
    """
    Merge a secondary profile into a primary one.

    Auth: x-admin-key
    """
    try:
        result = await service.merge_profiles(body.primary_profile_id, body.secondary_profile_id)
    except IapError as exc:
        raise_http_error(exc, "merge_profile")
    return MergeProfileResponse(request_id=request_id, merged=result.merged)


@router.post(
    "/v1/iap/internal/coins/adjust",
    response_model=AdjustCoinsResponse,
    dependencies=[Depends(require_admin_key)],
)
async def adjust_coins(
    body: AdjustCoinsRequest,
    service: EntitlementService = Depends(get_entitlement_service),
    request_id: str | None = Depends(get_request_id),
) -> AdjustCoinsResponse:
    """
    Apply an idempotent internal coin delta.

    Auth: x-admin-key
    """
    try:
        result = await service.adjust_coins(
            profile_id=body.profile_id,
            game_id=body.game_id,
            delta=body.delta,
            idempotency_key=body.idempotency_key,
            reason=body.reason,
        )
    except IapError as exc:
        raise_http_error(exc, "adjust_coins")
    return AdjustCoinsResponse.model_validate({"request_id": request_id, **result.to_dict()})
