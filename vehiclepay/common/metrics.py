"""Prometheus metric definitions for the payments service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


checkout_requests_total = Counter(
    "checkout_requests_total",
    "Total checkout creation requests",
    ["service", "payment_type"],
)
checkout_failures_total = Counter(
    "checkout_failures_total",
    "Checkout creations rejected or failed",
    ["service", "error_code"],
)
checkout_latency_seconds = Histogram("checkout_latency_seconds", "Checkout creation latency seconds", ["service"])
payment_success_total = Counter(
    "payment_success_total",
    "Transactions moved to payment_completed",
    ["service", "purchase_stage", "verification_source"],
)
payment_failure_total = Counter("payment_failure_total", "Transactions moved to payment_failed", ["service"])
transactions_superseded_total = Counter(
    "transactions_superseded_total",
    "Live checkouts cancelled because a newer checkout replaced them",
    ["service"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Gateway webhook deliveries by outcome",
    ["service", "event_type", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate gateway events skipped via the inbox",
    ["service", "event_type"],
)
stale_transitions_skipped_total = Counter(
    "stale_transitions_skipped_total",
    "Status-guarded updates that matched zero rows",
    ["service", "to_status"],
)
vehicle_status_writes_total = Counter(
    "vehicle_status_writes_total",
    "Vehicle availability writes applied by the availability gate",
    ["service", "status"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
