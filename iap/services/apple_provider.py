"""
Apple App Store Provider Implementation.

Verifies receipts with the App Store verifyReceipt endpoint using the app's
shared secret. Receipts from the sandbox environment are answered by the
production endpoint with status 21007 and are retried against the sandbox.
"""

from collections.abc import Mapping
from typing import Any

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

PRODUCTION_VERIFY_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_VERIFY_URL = "https://sandbox.itunes.apple.com/verifyReceipt"

# Status returned by production for a sandbox receipt
STATUS_SANDBOX_RECEIPT = 21007


def pick_receipt_line(response: Mapping[str, Any], product_id: str) -> Mapping[str, Any] | None:
    """
    Find the receipt line for a product.

    Searches latest_receipt_info first, then receipt.in_app. Returns None when
    no line names the product.
    """
    latest = response.get("latest_receipt_info")
    receipt = response.get("receipt")
    in_app = receipt.get("in_app") if isinstance(receipt, Mapping) else None
    lines = [
        line
        for line in [
            *(latest if isinstance(latest, list) else []),
            *(in_app if isinstance(in_app, list) else []),
        ]
        if isinstance(line, Mapping)
    ]
    target = product_id.strip().lower()
    for line in lines:
        if str(line.get("product_id") or "").strip().lower() == target:
            return line
    return None


class AppleReceiptProvider:
    """
    App Store receipt verification provider.

    Credentials come from the request's provider_config:
    shared_secret, verify_url, sandbox_verify_url.
    """

    provider = "apple"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        """
        Initialize Apple receipt provider.

        Args:
            client: Shared HTTP client (a per-call client is used when None)
            timeout_seconds: HTTP timeout per request
        """
        self._client = client
        self.timeout_seconds = timeout_seconds

    async def _post_json(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST a receipt and return the decoded body."""
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=body, timeout=self.timeout_seconds)
        except httpx.HTTPError as exc:
            logger.error("apple_verify_request_failed", url=url, error=str(exc))
            raise PurchaseVerificationError(self.provider, f"request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error("apple_verify_http_error", url=url, status=response.status_code)
            raise PurchaseVerificationError(
                self.provider, f"verify failed ({response.status_code})"
            )
        try:
            result = response.json()
        except ValueError:
            result = {}
        return result if isinstance(result, dict) else {}

    async def verify_purchase(self, request: VerificationRequest) -> VerifiedPurchase:
        """
        Verify an App Store receipt.

        Raises:
            PurchaseVerificationError: Missing receipt, non-zero status, no
                matching line or no transaction id
        """
        receipt_data = payload_value(request.payload, "receipt_data", "receiptData")
        if not receipt_data:
            raise PurchaseVerificationError(self.provider, "payload.receipt_data is required")

        config = request.provider_config
        verify_url = (config.get("verify_url") or "").strip() or PRODUCTION_VERIFY_URL
        sandbox_url = (config.get("sandbox_verify_url") or "").strip() or SANDBOX_VERIFY_URL

        body: dict[str, Any] = {"receipt-data": receipt_data, "exclude-old-transactions": True}
        if config.get("shared_secret"):
            body["password"] = config["shared_secret"]

        response = await self._post_json(verify_url, body)
        if _status(response) == STATUS_SANDBOX_RECEIPT:
            logger.info("apple_sandbox_receipt_retry", product_id=request.product_id)
            response = await self._post_json(sandbox_url, body)

        status = _status(response)
        if status != 0:
            logger.warning("apple_receipt_rejected", status=status, product_id=request.product_id)
            raise PurchaseVerificationError(self.provider, f"receipt rejected (status={status})")

        line = pick_receipt_line(response, request.product_id)
        if line is None:
            logger.warning("apple_receipt_product_mismatch", product_id=request.product_id)
            raise PurchaseVerificationError(self.provider, "receipt missing matching product")

        transaction_id = str(
            line.get("transaction_id") or line.get("original_transaction_id") or ""
        ).strip()
        if not transaction_id:
            raise PurchaseVerificationError(self.provider, "receipt missing transaction id")

        logger.info(
            "apple_receipt_verified",
            product_id=request.product_id,
            transaction_id=transaction_id,
        )

        if request.catalog_entry.is_consumable:
            return consumable_purchase(request, transaction_id)

        try:
            expires_at = int(float(line.get("expires_date_ms") or 0) // 1000)
        except (TypeError, ValueError):
            expires_at = 0
        return subscription_purchase(
            request,
            transaction_id,
            str(line.get("original_transaction_id") or transaction_id),
            expires_at,
        )


def _status(response: Mapping[str, Any]) -> int | None:
    try:
        return int(response.get("status"))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
