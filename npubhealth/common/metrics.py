"""Prometheus metric definitions shared by the payment client and API."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payment_status_checks_total = Counter(
    "payment_status_checks_total",
    "Payment status checks by outcome",
    ["service", "outcome"],
)
payment_status_transitions_total = Counter(
    "payment_status_transitions_total",
    "Observed payment status transitions",
    ["service", "from_status", "to_status"],
)
payment_stale_responses_total = Counter(
    "payment_stale_responses_total",
    "Status responses discarded because their flow was no longer active",
    ["service"],
)
payment_active_pollers = Gauge(
    "payment_active_pollers",
    "Current count of running payment status pollers",
    ["service"],
)
payment_flow_seconds = Histogram(
    "payment_flow_seconds",
    "Duration from opening a payment flow to a terminal status",
    ["service", "terminal_status"],
)
invoices_created_total = Counter("invoices_created_total", "Invoices created", ["service", "tier"])
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Provider webhooks received by outcome",
    ["service", "outcome"],
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
