"""
Prometheus metrics for the message store.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Outcome event counter (event, status)
- Outbound send counter (result)

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

# One increment per outcome event published on the sink
store_events_total = Counter(
    "store_events_total",
    "Total outcome events published by the message store",
    labelnames=["event", "status"]
)

# result: sent, invalid_jid, error
messages_sent_total = Counter(
    "messages_sent_total",
    "Total outbound messages handled by the REST layer",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_store_event(event: str, status: str) -> None:
    """Record an outcome event published for a session."""
    store_events_total.labels(event=event, status=status).inc()


def record_send_outcome(result: str) -> None:
    """
    Record the outcome of an outbound send.

    Args:
        result: One of "sent", "invalid_jid" or "error"
    """
    messages_sent_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
