"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    OUTCOME = "outcome"
    SOURCE = "source"
    ERROR_TYPE = "error_type"


class EntitlementMetrics:
    """
    Centralized metrics for the entitlements service.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Verifications (outcome, dedup hits, storefront latency and retries)
    - Reconciliations (outcome per source)
    - Notifications and the durable inbox
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "entitlements_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "entitlements_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "entitlements_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "entitlements_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Verification Metrics
        # ====================================================================
        self.verifications_total = Counter(
            "entitlements_verifications_total",
            "Purchase verifications by outcome",
            [MetricLabels.OUTCOME],
        )

        self.verification_dedup_total = Counter(
            "entitlements_verification_dedup_total",
            "Verifications answered without a new storefront call",
            ["kind"],
        )

        self.storefront_request_duration_seconds = Histogram(
            "entitlements_storefront_request_duration_seconds",
            "Storefront status call duration in seconds",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.storefront_retries_total = Counter(
            "entitlements_storefront_retries_total",
            "Storefront calls retried after a transient failure",
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.reconciliations_total = Counter(
            "entitlements_reconciliations_total",
            "Reconciliations by outcome and source",
            [MetricLabels.OUTCOME, MetricLabels.SOURCE],
        )

        self.reconcile_conflicts_total = Counter(
            "entitlements_reconcile_conflicts_total",
            "Optimistic concurrency conflicts during reconciliation",
        )

        # ====================================================================
        # Notification Metrics
        # ====================================================================
        self.notifications_total = Counter(
            "entitlements_notifications_total",
            "Storefront notifications by event type and result",
            ["event_type", "result"],
        )

        self.inbox_events_total = Counter(
            "entitlements_inbox_events_total",
            "Inbox events by processing result",
            ["result"],
        )

        self.inbox_pending_events = Gauge(
            "entitlements_inbox_pending_events",
            "Pending inbox events seen by the last drain batch",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "entitlements_errors_total",
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

    def record_verification(self, outcome: str) -> None:
        """Record a verification outcome (payment state or failure kind)."""
        self.verifications_total.labels(outcome=outcome).inc()

    def record_verification_dedup(self, kind: str) -> None:
        """Record a verification served by the in-flight or recent window."""
        self.verification_dedup_total.labels(kind=kind).inc()

    def record_reconciliation(self, outcome: str, source: str) -> None:
        """Record reconciliation outcome."""
        self.reconciliations_total.labels(outcome=outcome, source=source).inc()

    def record_notification(self, event_type: str, result: str) -> None:
        """Record a received storefront notification."""
        self.notifications_total.labels(event_type=event_type, result=result).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EntitlementMetrics()
