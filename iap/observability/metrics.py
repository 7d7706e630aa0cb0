"""
Metrics Collection with Prometheus.

Exposes purchase, ledger and HTTP metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from iap.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    PROVIDER = "provider"
    PURCHASE_TYPE = "type"
    ERROR_TYPE = "error_type"


class IapMetrics:
    """
    Centralized metrics for the IAP entitlement service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Purchases (rate by provider/type, dedup hits, verification failures)
    - Internal coin adjustments and profile merges
    - Webhook ingestion
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "iap_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
                "store": settings.store_type,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "iap_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "iap_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "iap_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Purchase Metrics
        # ====================================================================
        self.purchases_total = Counter(
            "iap_purchases_total",
            "Verified purchases by provider, type and dedup outcome",
            [MetricLabels.PROVIDER, MetricLabels.PURCHASE_TYPE, "deduplicated"],
        )

        self.coins_granted_total = Counter(
            "iap_coins_granted_total",
            "Coins granted by verified consumable purchases",
            [MetricLabels.PROVIDER],
        )

        self.verification_failures_total = Counter(
            "iap_verification_failures_total",
            "Purchases rejected before or during provider verification",
            [MetricLabels.PROVIDER, MetricLabels.ERROR_TYPE],
        )

        self.verification_duration_seconds = Histogram(
            "iap_verification_duration_seconds",
            "Provider verification duration in seconds",
            [MetricLabels.PROVIDER],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.coin_adjustments_total = Counter(
            "iap_coin_adjustments_total",
            "Internal coin adjustments",
            ["deduplicated", "direction"],
        )

        self.profile_merges_total = Counter(
            "iap_profile_merges_total",
            "Profile merge requests",
            ["merged"],
        )

        self.webhook_events_total = Counter(
            "iap_webhook_events_total",
            "Webhook events ingested",
            [MetricLabels.PROVIDER, "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "iap_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_purchase(
        self, provider: str, purchase_type: str, deduplicated: bool, coins: int
    ) -> None:
        """Record a purchase that passed verification."""
        self.purchases_total.labels(
            provider=provider, type=purchase_type, deduplicated=str(deduplicated)
        ).inc()
        if not deduplicated and coins > 0:
            self.coins_granted_total.labels(provider=provider).inc(coins)

    def record_verification_failure(self, provider: str, error_type: str) -> None:
        """Record a rejected purchase."""
        self.verification_failures_total.labels(
            provider=provider or "unknown", error_type=error_type
        ).inc()

    def record_coin_adjustment(self, deduplicated: bool, delta: int) -> None:
        """Record an internal coin adjustment."""
        self.coin_adjustments_total.labels(
            deduplicated=str(deduplicated), direction="credit" if delta > 0 else "debit"
        ).inc()

    def record_merge(self, merged: bool) -> None:
        """Record a profile merge request."""
        self.profile_merges_total.labels(merged=str(merged)).inc()

    def record_webhook(self, provider: str, success: bool) -> None:
        """Record webhook ingestion outcome."""
        self.webhook_events_total.labels(provider=provider, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = IapMetrics()
