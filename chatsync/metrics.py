"""
Prometheus metrics for the sync engine.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook event outcome counter (event, result)
- Message write counter (source, result)
- Sync run counter (sync_type, status)
- Media upload counter (result)

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

# result: processed, failed, ignored, unknown_channel, invalid_signature, invalid_json
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events by normalized event type and outcome",
    labelnames=["event", "result"]
)

# source: webhook, sync; result: inserted, skipped
messages_written_total = Counter(
    "messages_written_total",
    "Canonical message writes by source and outcome",
    labelnames=["source", "result"]
)

# status: completed, failed, rejected
sync_runs_total = Counter(
    "sync_runs_total",
    "Sync orchestrator runs by type and terminal status",
    labelnames=["sync_type", "status"]
)

# result: stored, no_source, failed
media_uploads_total = Counter(
    "media_uploads_total",
    "Media pipeline outcomes",
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
    # Normalize path to avoid high-cardinality labels
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


def record_webhook_outcome(event: str, result: str) -> None:
    webhook_events_total.labels(event=event or "UNKNOWN", result=result).inc()


def record_message_write(source: str, result: str) -> None:
    messages_written_total.labels(source=source, result=result).inc()


def record_sync_run(sync_type: str, status: str) -> None:
    sync_runs_total.labels(sync_type=sync_type, status=status).inc()


def record_media_outcome(result: str) -> None:
    media_uploads_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
