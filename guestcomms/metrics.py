"""
Prometheus metrics for the scheduling pipeline and its HTTP surface.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook outcome counter (result)
- Scheduling counter (message_type, result)
- Claim counter and batch-size histogram
- Settlement counter (status, reason)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# Webhook processing outcome counter
# result: accepted, invalid_signature, unknown_tenant, validation_error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# result: created, duplicate
scheduled_messages_total = Counter(
    "scheduled_messages_total",
    "Outbound messages enqueued by the planner",
    labelnames=["message_type", "result"]
)

claimed_messages_total = Counter(
    "claimed_messages_total",
    "Jobs moved from pending to processing by the claim loop"
)

claim_batch_size = Histogram(
    "claim_batch_size",
    "Number of jobs returned per claim round",
    buckets=(0, 1, 5, 10, 25, 50, 100)
)

# status: sent, failed
# reason: delivered, policy, error
settled_messages_total = Counter(
    "settled_messages_total",
    "Jobs settled by the delivery executor",
    labelnames=["status", "reason"]
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


def record_webhook_outcome(result: str) -> None:
    """
    Record a webhook processing outcome.

    Args:
        result: Processing result - one of:
            - "accepted": Event dispatched to the scheduler
            - "invalid_signature": HMAC validation failed
            - "unknown_tenant": No tenant matched the payload
            - "validation_error": Request body was not a JSON object
    """
    webhook_requests_total.labels(result=result).inc()


def record_scheduled_message(message_type: str, created: bool) -> None:
    scheduled_messages_total.labels(
        message_type=message_type,
        result="created" if created else "duplicate"
    ).inc()


def record_claim_round(count: int) -> None:
    claim_batch_size.observe(count)
    if count:
        claimed_messages_total.inc(count)


def record_message_settled(status: str, reason: str) -> None:
    settled_messages_total.labels(status=status, reason=reason).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Content type for the Prometheus exposition format."""
    return CONTENT_TYPE_LATEST
