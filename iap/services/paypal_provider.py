"""
PayPal Web Provider Implementation.

Verifies web wallet purchases by looking up the PayPal order (Orders v2)
with an OAuth client-credentials token.
"""

from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import quote

import httpx
from structlog import get_logger

from iap.exceptions import PurchaseVerificationError
from iap.models.domain import VerificationRequest, VerifiedPurchase
from iap.services.payment_provider import (
    consumable_purchase,
    payload_value,
    subscription_purchase,
)

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api-m.paypal.com"
COMPLETED_STATUSES = frozenset({"COMPLETED", "APPROVED"})


class PayPalWebProvider:
    """
    PayPal Orders v2 verification provider.

    Credentials come from the request's provider_config:
    client_id, client_secret, base_url.
    """

    provider = "paypal_web"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        """
        Initialize PayPal provider.

        Args:
            client: Shared HTTP client (a per-call client is used when None)
            timeout_seconds: HTTP timeout per request
        """
        self._client = client
        self.timeout_seconds = timeout_seconds

    async def _request(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> Any:
        try:
            response = await client.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("paypal_request_failed", url=url, error=str(exc))
            raise PurchaseVerificationError(self.provider, f"request failed: {exc}") from exc
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            logger.error("paypal_api_error", url=url, status=response.status_code)
            raise PurchaseVerificationError(
                self.provider, f"verify failed ({response.status_code})"
            )
        return body if isinstance(body, dict) else {}

    async def _lookup_order(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        order_id: str,
        client_id: str,
        secret: str,
    ) -> dict[str, Any]:
        token_body = await self._request(
            client,
            "POST",
            f"{base_url}/v1/oauth2/token",
            auth=(client_id, secret),
            data={"grant_type": "client_credentials"},
        )
        access_token = str(token_body.get("access_token") or "")
        if not access_token:
            raise PurchaseVerificationError(self.provider, "token request returned no access_token")

        return await self._request(
            client,
            "GET",
            f"{base_url}/v2/checkout/orders/{quote(order_id, safe='')}",
            headers={"Authorization": f"Bearer {access_token}"},
        )

    def _check_amount(
        self, order: dict[str, Any], request: VerificationRequest, order_id: str
    ) -> None:
        """The first purchase unit must carry the catalog price and currency."""
        entry = request.catalog_entry
        if entry.price is None:
            return

        units = order.get("purchase_units")
        unit = units[0] if isinstance(units, list) and units else {}
        amount = unit.get("amount") if isinstance(unit, dict) else None
        if not isinstance(amount, dict):
            raise PurchaseVerificationError(self.provider, "order has no amount")

        try:
            value = Decimal(str(amount.get("value")))
        except InvalidOperation as exc:
            raise PurchaseVerificationError(self.provider, "order has no amount") from exc
        currency = str(amount.get("currency_code") or "").strip().upper()
        expected_currency = (entry.currency or "").strip().upper()

        if value != entry.price or currency != expected_currency:
            logger.warning(
                "paypal_amount_mismatch",
                order_id=order_id,
                product_id=request.product_id,
                amount=str(value),
                currency=currency,
                expected_amount=str(entry.price),
                expected_currency=expected_currency,
            )
            raise PurchaseVerificationError(
                self.provider,
                f"amount mismatch ({value} {currency}, expected {entry.price} {expected_currency})",
            )

    async def verify_purchase(self, request: VerificationRequest) -> VerifiedPurchase:
        """
        Verify a PayPal order.

        Raises:
            PurchaseVerificationError: Missing order id or credentials, HTTP
                failure, an order that is not COMPLETED/APPROVED, or
                an amount that differs from the catalog price
        """
        order_id = payload_value(request.payload, "order_id", "orderId")
        if not order_id:
            raise PurchaseVerificationError(self.provider, "payload.order_id is required")

        config = request.provider_config
        client_id = config.get("client_id") or ""
        client_secret = config.get("client_secret") or ""
        if not client_id or not client_secret:
            raise PurchaseVerificationError(self.provider, "credentials are not configured")
        base_url = ((config.get("base_url") or "").strip() or DEFAULT_BASE_URL).rstrip("/")

        if self._client is not None:
            order = await self._lookup_order(
                self._client, base_url, order_id, client_id, client_secret
            )
        else:
            async with httpx.AsyncClient() as client:
                order = await self._lookup_order(
                    client, base_url, order_id, client_id, client_secret
                )

        status = str(order.get("status") or "").upper()
        if status not in COMPLETED_STATUSES:
            logger.warning("paypal_order_incomplete", order_id=order_id, status=status)
            raise PurchaseVerificationError(
                self.provider, f"order not complete (status={status or 'unknown'})"
            )

        self._check_amount(order, request, order_id)
        logger.info("paypal_order_verified", order_id=order_id, status=status)

        if request.catalog_entry.is_consumable:
            return consumable_purchase(request, order_id)

        try:
            expires_at = int(float(request.payload.get("expires_at") or 0))
        except (TypeError, ValueError):
            expires_at = 0
        return subscription_purchase(request, order_id, order_id, expires_at)
