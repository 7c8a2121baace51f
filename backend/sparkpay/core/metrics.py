"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# HTTP metrics
http_requests = Counter(
    'http_requests_total',
    'HTTP requests by route template',
    ['method', 'route', 'status']
)

http_latency = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency by route template',
    ['method', 'route'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

# Checkout metrics
checkout_attempts = Counter(
    'checkout_attempts_total',
    'Total checkout attempts',
    ['kind', 'result']  # kind: ticket/product; result: success, conflict, invalid, upstream_error, error
)

checkout_latency = Histogram(
    'checkout_latency_seconds',
    'Checkout request latency including the gateway call',
    ['kind'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Inventory metrics
inventory_reservations = Counter(
    'inventory_reservations_total',
    'Inventory reservation attempts',
    ['kind', 'result']  # kind: ticket/product; result: reserved, rejected
)

stock_reservation_retries = Counter(
    'stock_reservation_retries_total',
    'Product stock reservation retries due to version conflicts'
)

# Payment notification metrics
webhook_notifications = Counter(
    'webhook_notifications_total',
    'Gateway notifications received',
    ['result']  # processed, invalid_signature, not_found, error
)

payment_effects = Counter(
    'payment_effects_total',
    'Payment side effects evaluated',
    ['effect', 'result']  # effect: issue_tickets, release_capacity, product_paid, release_stock
)

reconciliation_repairs = Counter(
    'reconciliation_repairs_total',
    'Orders re-driven by the reconciliation sweep',
    ['category']
)

# Gateway metrics
gateway_requests = Counter(
    'gateway_requests_total',
    'Outbound payment gateway requests',
    ['operation', 'result']  # operation: create_token, query_status; result: ok, http_error, transport_error
)

gateway_latency = Histogram(
    'gateway_latency_seconds',
    'Payment gateway request latency',
    ['operation'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_checkout(kind: str, result: str):
    """Record checkout outcome. Result: success, conflict, invalid, upstream_error, error"""
    checkout_attempts.labels(kind=kind, result=result).inc()


def record_reservation(kind: str, reserved: bool):
    result = "reserved" if reserved else "rejected"
    inventory_reservations.labels(kind=kind, result=result).inc()


def record_webhook(result: str):
    webhook_notifications.labels(result=result).inc()


def record_effect(effect: str, result: str):
    """Record a payment side effect. Result: applied, skipped, flagged"""
    payment_effects.labels(effect=effect, result=result).inc()


def record_gateway_request(operation: str, result: str):
    gateway_requests.labels(operation=operation, result=result).inc()


def record_http_request(method: str, route: str, status_code: int, seconds: float):
    http_requests.labels(method=method, route=route, status=str(status_code)).inc()
    http_latency.labels(method=method, route=route).observe(seconds)
