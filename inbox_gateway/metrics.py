"""
Prometheus metrics for the inbox gateway.

Counters and histograms live in prometheus-client's default registry and
are exposed in text format on GET /metrics.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by method, route and status code",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0),
)

# result: processed, no_events, invalid_signature, handshake_ok,
# handshake_forbidden, handshake_unconfigured, test_injected, custom_route, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook requests by processing outcome",
    labelnames=["result"]
)

realtime_broadcasts_total = Counter(
    "realtime_broadcasts_total",
    "Realtime events published to connected clients",
    labelnames=["event"]
)

journal_write_failures_total = Counter(
    "journal_write_failures_total",
    "Webhook journal writes that failed and were skipped"
)


# =============================================================================
# Recording
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Count one HTTP request and observe its latency.

    Args:
        method: HTTP method
        path: Route template or raw path
        status: Response status code
        latency_seconds: Time spent handling the request
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_broadcast(event: str) -> None:
    realtime_broadcasts_total.labels(event=event).inc()


def record_journal_failure() -> None:
    journal_write_failures_total.inc()


# =============================================================================
# Exposition
# =============================================================================

def get_metrics() -> bytes:
    """Current metrics in Prometheus text format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
