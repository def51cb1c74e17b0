"""
Prometheus metrics for the notification service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Batch ingestion counter
- Dispatch outcome counter (result)
- Webhook event counter (event, result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

batches_ingested_total = Counter(
    "batches_ingested_total",
    "Total batches created from uploaded files",
)

# result: sent, failed, skipped
dispatch_messages_total = Counter(
    "dispatch_messages_total",
    "Total dispatch attempts by outcome",
    labelnames=["result"]
)

# event: button, status, unknown
# result: correlated, not_found, unclassified, acknowledged, ack_failed, received, error
webhook_events_total = Counter(
    "webhook_events_total",
    "Total inbound webhook events by kind and outcome",
    labelnames=["event", "result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template, e.g. /dashboard/{batch_id}
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(
        method=method,
        path=path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=path
    ).observe(latency_seconds)


def record_batch_ingested() -> None:
    batches_ingested_total.inc()


def record_dispatch_outcome(result: str) -> None:
    dispatch_messages_total.labels(result=result).inc()


def record_webhook_event(event: str, result: str) -> None:
    webhook_events_total.labels(event=event, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
