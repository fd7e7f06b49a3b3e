"""
Prometheus metrics for the CRM service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook request outcomes and per-event processing outcomes
- Auto-reply outcomes and escalation count
- External provider call outcomes (WhatsApp, Mistral)

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

# result: verified, verification_failed, accepted, invalid_json, invalid_signature, disabled
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook request outcomes",
    labelnames=["result"]
)

# kind: status, message / result: processed, skipped, not_found, error
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook events processed in the background",
    labelnames=["kind", "result"]
)

# outcome: sent, failed, apology_sent, dropped
auto_replies_total = Counter(
    "auto_replies_total",
    "Automated reply outcomes",
    labelnames=["outcome"]
)

escalations_total = Counter(
    "escalations_total",
    "Inbound messages escalated to the human team"
)

# provider: whatsapp, mistral / outcome: success, error
provider_requests_total = Counter(
    "provider_requests_total",
    "Calls to external providers",
    labelnames=["provider", "outcome"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
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


def record_webhook_outcome(result: str) -> None:
    """Record the outcome of a GET/POST on /webhook."""
    webhook_requests_total.labels(result=result).inc()


def record_webhook_event(kind: str, result: str) -> None:
    """Record the processing result of one status update or inbound message."""
    webhook_events_total.labels(kind=kind, result=result).inc()


def record_auto_reply(outcome: str) -> None:
    auto_replies_total.labels(outcome=outcome).inc()


def record_escalation() -> None:
    escalations_total.inc()


def record_provider_call(provider: str, success: bool) -> None:
    provider_requests_total.labels(
        provider=provider,
        outcome="success" if success else "error"
    ).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Content type string for Prometheus exposition format."""
    return CONTENT_TYPE_LATEST
