"""
Prometheus metrics for the ECPay payment pipeline.

Tracks:
- Checkout payloads built / rejected
- Callback outcomes and processing duration
- Reconciliation side effects and failures
- Payment resubmissions

reconciliation_failures_total is the alerting signal for verified payments
whose stock/need update failed: ECPay is still told "1|OK" in that case,
so the gateway will never surface it.
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_requests_total = Counter(
    "ecpay_checkout_requests_total",
    "Total checkout payloads requested",
    ["status"],  # created, rejected
)

checkout_amount = Histogram(
    "ecpay_checkout_amount",
    "Checkout amounts in currency units",
    buckets=(100, 300, 500, 1000, 3000, 5000, 10000, 50000, 100000),
)

# Callback metrics
callback_events_total = Counter(
    "ecpay_callback_events_total",
    "Total ECPay callbacks processed",
    # paid, failed, duplicate, reconciliation_failed, malformed,
    # signature_mismatch, not_found, error
    ["outcome"],
)

callback_processing_duration_seconds = Histogram(
    "ecpay_callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reconciliation_applied_total = Counter(
    "reconciliation_applied_total",
    "Orders whose payment outcome was applied",
    ["outcome"],  # paid, failed
)

reconciliation_failures_total = Counter(
    "reconciliation_failures_total",
    "Verified successful payments whose reconciliation failed",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation unit duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

reconciliation_stuck_transactions = Gauge(
    "reconciliation_stuck_transactions",
    "Transactions with a success callback still awaiting settlement",
)

reconciliation_last_recovery_timestamp = Gauge(
    "reconciliation_last_recovery_timestamp",
    "Timestamp of the last stuck-settlement recovery run",
)

# Resubmission metrics
resubmissions_total = Counter(
    "ecpay_resubmissions_total",
    "Payment resubmission attempts",
    ["status"],  # accepted, rejected
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(status: str, amount: int | None = None) -> None:
        """Record a checkout payload request."""
        checkout_requests_total.labels(status=status).inc()
        if amount is not None:
            checkout_amount.observe(amount)

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        """Record a callback outcome."""
        callback_events_total.labels(outcome=outcome).inc()
        callback_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_reconciliation(outcome: str, duration_seconds: float) -> None:
        """Record an applied payment outcome."""
        reconciliation_applied_total.labels(outcome=outcome).inc()
        reconciliation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_reconciliation_failure() -> None:
        """Record a reconciliation failure after a verified success."""
        reconciliation_failures_total.inc()

    @staticmethod
    def set_recovery_metrics(stuck_count: int) -> None:
        """Set stuck-settlement recovery metrics."""
        reconciliation_stuck_transactions.set(stuck_count)
        reconciliation_last_recovery_timestamp.set(time.time())

    @staticmethod
    def record_resubmission(status: str) -> None:
        """Record a resubmission attempt."""
        resubmissions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
