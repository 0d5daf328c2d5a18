"""Prometheus metric definitions shared across components."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


capacity_reservations_total = Counter(
    "capacity_reservations_total",
    "Capacity reservation attempts by outcome",
    ["service", "outcome"],
)
capacity_releases_total = Counter("capacity_releases_total", "Capacity release calls", ["service"])
request_transitions_total = Counter(
    "request_transitions_total",
    "Delivery request status transitions",
    ["service", "from_status", "to_status"],
)
invalid_transitions_total = Counter(
    "invalid_transitions_total",
    "Rejected status transitions",
    ["service", "entity_type"],
)
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Payment status transitions",
    ["service", "from_status", "to_status"],
)
provider_calls_total = Counter(
    "provider_calls_total",
    "Payment provider calls by operation and outcome",
    ["service", "operation", "outcome"],
)
provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Payment provider call latency seconds",
    ["service", "operation"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Provider webhook deliveries by event type and outcome",
    ["service", "event_type", "outcome"],
)
duplicate_webhooks_skipped_total = Counter(
    "duplicate_webhooks_skipped_total",
    "Webhook deliveries skipped by the dedup window",
    ["service"],
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
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
