"""
Prometheus metrics for the storefront API.

HTTP traffic is instrumented from app hooks; the business counters are
incremented by the order, payment and inventory code. /metrics is meant for the
Prometheus scraper only and should be firewalled from the public internet.
"""
import os
import time

from flask import Blueprint, Response, g, request
from prometheus_client import (
    CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, Gauge, Histogram,
    generate_latest, multiprocess
)

metrics_bp = Blueprint('metrics', __name__)

# Gunicorn workers share metric files through PROMETHEUS_MULTIPROC_DIR
MULTIPROCESS_MODE = bool(os.environ.get('PROMETHEUS_MULTIPROC_DIR'))

LATENCY_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def _registry():
    return None if MULTIPROCESS_MODE else REGISTRY


# HTTP
http_requests_total = Counter(
    'http_requests_total', 'HTTP requests by endpoint and status',
    ['method', 'endpoint', 'http_status'], registry=_registry()
)
http_request_duration_seconds = Histogram(
    'http_request_duration_seconds', 'HTTP request latency',
    ['method', 'endpoint'], buckets=LATENCY_BUCKETS, registry=_registry()
)
http_requests_in_flight = Gauge(
    'http_requests_in_flight', 'Requests being handled right now', registry=_registry()
)

# Storefront
orders_created_total = Counter(
    'orders_created_total', 'Orders created from carts', ['payment_method'], registry=_registry()
)
payments_captured_total = Counter(
    'payments_captured_total', 'Payments marked captured', ['source'], registry=_registry()
)
webhook_events_total = Counter(
    'webhook_events_total', 'Razorpay webhook events by outcome', ['event', 'outcome'], registry=_registry()
)
low_stock_alerts_total = Counter(
    'low_stock_alerts_total', 'Stock rows that fell to their low-stock threshold', registry=_registry()
)


def setup_metrics_instrumentation(app):
    """Time every request and count it by endpoint and status."""

    @app.before_request
    def start_request_timer():
        g.metrics_started_at = time.perf_counter()
        http_requests_in_flight.inc()

    @app.after_request
    def record_request(response):
        started = g.pop('metrics_started_at', None)
        if started is None:
            return response
        endpoint = request.endpoint or 'unmatched'
        http_request_duration_seconds.labels(request.method, endpoint).observe(time.perf_counter() - started)
        http_requests_total.labels(request.method, endpoint, response.status_code).inc()
        http_requests_in_flight.dec()
        return response


@metrics_bp.route('/metrics')
def metrics():
    if MULTIPROCESS_MODE:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
    else:
        registry = REGISTRY
    return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)
