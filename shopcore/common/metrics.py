"""Prometheus metric definitions shared across the order core."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


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
order_transitions_total = Counter(
    "order_transitions_total",
    "Order status transitions applied",
    ["from_status", "to_status"],
)
order_conflicts_total = Counter(
    "order_conflicts_total",
    "Optimistic concurrency conflicts on order writes",
    ["operation", "outcome"],
)
reservation_requests_total = Counter(
    "reservation_requests_total",
    "Group reservation attempts by result",
    ["result"],
)
reservations_expired_total = Counter(
    "reservations_expired_total",
    "Reservations expired by the sweeper or a stale action",
)
sweeper_runs_total = Counter("sweeper_runs_total", "Expiry sweeps executed", ["outcome"])
payment_outcomes_total = Counter(
    "payment_outcomes_total",
    "Normalized payment outcomes",
    ["gateway", "outcome"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Latency of gateway adapter calls",
    ["gateway", "operation"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by source and result",
    ["source", "result"],
)
late_outcomes_discarded_total = Counter(
    "late_outcomes_discarded_total",
    "Gateway outcomes discarded because the payment was already settled",
    ["source"],
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
