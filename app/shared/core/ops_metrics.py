"""
Operational metrics for billing webhook ingestion.

Prometheus counters/histograms tracking webhook outcomes, ledger conflicts
and notification delivery health.
"""

from prometheus_client import Counter, Histogram

WEBHOOK_EVENTS_TOTAL = Counter(
    "billing_webhook_events_total",
    "Total webhook deliveries by provider and outcome",
    ["provider", "outcome"],  # processed, idempotent, rejected, acknowledged
)

WEBHOOK_PROCESSING_SECONDS = Histogram(
    "billing_webhook_processing_seconds",
    "Time spent processing a webhook delivery",
    ["provider"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)

LEDGER_CONFLICTS_TOTAL = Counter(
    "billing_ledger_conflicts_total",
    "Payment ledger inserts rejected by a uniqueness constraint",
    ["provider"],
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "billing_notification_failures_total",
    "Payment alert dispatches that failed or timed out",
)

API_ERRORS_TOTAL = Counter(
    "billing_api_errors_total",
    "API errors by path, method and status code",
    ["path", "method", "status_code"],
)
