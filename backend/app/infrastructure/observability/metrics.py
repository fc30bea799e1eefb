from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "total_requests",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY_SECONDS = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path"),
)
DB_QUERY_DURATION_SECONDS = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    labelnames=("operation",),
)
REDIS_LATENCY_SECONDS = Histogram(
    "redis_latency_seconds",
    "Redis command latency in seconds",
    labelnames=("operation",),
)
WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Billing webhook notifications by event kind and outcome",
    labelnames=("event_kind", "outcome"),
)
WEBHOOK_RETRY_ATTEMPTS_TOTAL = Counter(
    "webhook_retry_attempts_total",
    "Failed webhook handler attempts that were scheduled for retry",
)
WEBHOOK_DEAD_LETTERS_TOTAL = Counter(
    "webhook_dead_letters_total",
    "Notifications written to the dead-letter table",
    labelnames=("error_category",),
)
WEBHOOK_SIGNATURE_REJECTIONS_TOTAL = Counter(
    "webhook_signature_rejections_total",
    "Webhook requests rejected by signature verification",
    labelnames=("scheme",),
)


def record_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(duration_seconds)


def observe_db_query(duration_seconds: float, operation: str = "sql") -> None:
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_redis_latency(duration_seconds: float, operation: str) -> None:
    REDIS_LATENCY_SECONDS.labels(operation=operation).observe(duration_seconds)


def record_webhook_outcome(event_kind: str, outcome: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(event_kind=event_kind, outcome=outcome).inc()


@contextmanager
def measure_redis(operation: str):
    started_at = perf_counter()
    try:
        yield
    finally:
        observe_redis_latency(perf_counter() - started_at, operation=operation)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
