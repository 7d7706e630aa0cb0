"""
Google Play Provider Implementation.

Verifies one-time products and subscriptions with the Google Play Developer
API (androidpublisher v3) using a service account. The API client is
synchronous, so calls run in a worker thread.
"""

import asyncio
import re
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from structlog import get_logger

from iap.exceptions import PurchaseVerificationError
from iap.models.domain import VerificationRequest, VerifiedPurchase
from iap.services.payment_provider import (
    consumable_purchase,
    payload_value,
    subscription_purchase,
)

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
DEFAULT_TOKEN_URL = "https://oauth2.googleapis.com/token"

ServiceFactory = Callable[[Mapping[str, str]], Any]


def build_publisher_service(config: Mapping[str, str]) -> Any:
    """Build an androidpublisher client from service account fields."""
    credentials = service_account.Credentials.from_service_account_info(  # type: ignore[no-untyped-call]
        {
            "type": "service_account",
            "client_email": config["client_email"],
            "private_key": config["private_key"].replace("\\n", "\n"),
            "token_uri": (config.get("token_url") or "").strip() or DEFAULT_TOKEN_URL,
        },
        scopes=[ANDROID_PUBLISHER_SCOPE],
    )
    return build("androidpublisher", "v3", credentials=credentials, cache_discovery=False)


def parse_rfc3339_seconds(value: Any) -> int:
    """Parse an RFC 3339 timestamp to epoch seconds, 0 when unparseable."""
    text = str(value or "").strip()
    if not text:
        return 0
    try:
        text = re.sub(r"(\.\d{6})\d+", r"\1", text.replace("Z", "+00:00"))
        return int(datetime.fromisoformat(text).timestamp())
    except ValueError:
        return 0


def pick_line_item(result: Mapping[str, Any], product_id: str) -> Mapping[str, Any] | None:
    """Find the subscriptionsv2 line item for a product, None when absent."""
    line_items = result.get("lineItems")
    target = product_id.strip().lower()
    for item in line_items if isinstance(line_items, list) else []:
        if not isinstance(item, Mapping):
            continue
        if str(item.get("productId") or "").strip().lower() == target:
            return item
    return None


class GooglePlayProvider:
    """
    Google Play In-App Billing provider.

    Credentials come from the request's provider_config:
    client_email, private_key, token_url.
    """

    provider = "google"

    def __init__(self, service_factory: ServiceFactory | None = None) -> None:
        """
        Initialize Google Play provider.

        Args:
            service_factory: Builds an API client from credentials (defaults to
                the androidpublisher v3 discovery client)
        """
        self._service_factory = service_factory or build_publisher_service
        self._services: dict[tuple[str, str], Any] = {}

    def _service(self, config: Mapping[str, str]) -> Any:
        cache_key = (config["client_email"], config.get("token_url") or "")
        service = self._services.get(cache_key)
        if service is None:
            service = self._service_factory(config)
            self._services[cache_key] = service
            logger.info("google_play_service_initialized", client_email=config["client_email"])
        return service

    def _get_product(
        self, config: Mapping[str, str], package: str, product: str, token: str
    ) -> Any:
        return (
            self._service(config)
            .purchases()
            .products()
            .get(packageName=package, productId=product, token=token)
            .execute()
        )

    def _get_subscription(self, config: Mapping[str, str], package: str, token: str) -> Any:
        return (
            self._service(config)
            .purchases()
            .subscriptionsv2()
            .get(packageName=package, token=token)
            .execute()
        )

    async def verify_purchase(self, request: VerificationRequest) -> VerifiedPurchase:
        """
        Verify a Google Play purchase token.

        Raises:
            PurchaseVerificationError: Missing fields or credentials, API error,
                a purchase for another product, or a product purchase that is
                not completed
        """
        package_name = payload_value(request.payload, "package_name", "packageName")
        purchase_token = payload_value(request.payload, "purchase_token", "purchaseToken")
        if not package_name or not purchase_token:
            raise PurchaseVerificationError(
                self.provider, "payload.package_name and payload.purchase_token are required"
            )

        config = request.provider_config
        if not config.get("client_email") or not config.get("private_key"):
            raise PurchaseVerificationError(self.provider, "credentials are not configured")

        try:
            if request.catalog_entry.is_consumable:
                result = await asyncio.to_thread(
                    self._get_product, config, package_name, request.product_id, purchase_token
                )
            else:
                result = await asyncio.to_thread(
                    self._get_subscription, config, package_name, purchase_token
                )
        except HttpError as exc:
            error_content = exc.content.decode("utf-8") if exc.content else str(exc)
            logger.error(
                "google_play_verification_failed",
                status=exc.resp.status,
                error=error_content,
            )
            if exc.resp.status == 404:
                raise PurchaseVerificationError(
                    self.provider, "purchase not found or invalid token"
                ) from exc
            if exc.resp.status == 410:
                raise PurchaseVerificationError(self.provider, "purchase token expired") from exc
            raise PurchaseVerificationError(
                self.provider, f"verify failed ({exc.resp.status})"
            ) from exc
        except (GoogleAuthError, OSError, ValueError, KeyError) as exc:
            logger.exception("google_play_verification_unexpected_error")
            raise PurchaseVerificationError(self.provider, f"verification failed: {exc}") from exc

        result = result if isinstance(result, Mapping) else {}

        if request.catalog_entry.is_consumable:
            purchased_product = str(result.get("productId") or request.product_id)
            if purchased_product.strip().lower() != request.product_id.strip().lower():
                logger.warning(
                    "google_play_product_mismatch",
                    product_id=request.product_id,
                    purchased_product=purchased_product,
                )
                raise PurchaseVerificationError(self.provider, "purchase is for another product")
            purchase_state = int(result.get("purchaseState") or 0)
            if purchase_state != 0:
                raise PurchaseVerificationError(
                    self.provider, f"purchase not completed (purchaseState={purchase_state})"
                )
            transaction_id = str(result.get("orderId") or purchase_token).strip()
            logger.info(
                "google_play_purchase_verified",
                order_id=result.get("orderId"),
                product_id=request.product_id,
            )
            return consumable_purchase(request, transaction_id)

        line_item = pick_line_item(result, request.product_id)
        if line_item is None:
            logger.warning("google_play_product_mismatch", product_id=request.product_id)
            raise PurchaseVerificationError(self.provider, "subscription missing matching product")
        expires_at = parse_rfc3339_seconds(line_item.get("expiryTime"))
        transaction_id = str(result.get("latestOrderId") or purchase_token).strip()
        logger.info(
            "google_play_subscription_verified",
            order_id=result.get("latestOrderId"),
            product_id=request.product_id,
            expires_at=expires_at,
        )
        return subscription_purchase(request, transaction_id, transaction_id, expires_at)
