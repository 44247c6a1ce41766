"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Booking metrics
booking_attempts = Counter(
    'carpool_booking_attempts_total',
    'Total booking attempts',
    ['status']  # success, conflict, error
)

booking_latency = Histogram(
    'carpool_booking_latency_seconds',
    'Booking request latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

seat_cas_retries = Counter(
    'carpool_seat_cas_retries_total',
    'Seat counter compare-and-swap retries due to version conflicts'
)

# Notification pipeline metrics
notifications_published = Counter(
    'carpool_notifications_published_total',
    'Envelopes handed to the notification transport',
    ['outcome']  # sent, skipped, failed, duplicate
)

change_events = Counter(
    'carpool_change_events_total',
    'Change events routed through the notification pipeline',
    ['entity_type', 'outcome']  # processed, skipped, errored
)

# Cache metrics
cache_operations = Counter(
    'carpool_cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/invalidate, hit/miss/ok/error
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_booking_attempt(status: str):
    """Record booking attempt. Status: success, conflict, error"""
    booking_attempts.labels(status=status).inc()


def record_publish(outcome: str):
    notifications_published.labels(outcome=outcome).inc()


def record_change_event(entity_type: str, outcome: str):
    change_events.labels(entity_type=entity_type, outcome=outcome).inc()


def record_cache_operation(operation: str, result: str):
    cache_operations.labels(operation=operation, result=result).inc()
