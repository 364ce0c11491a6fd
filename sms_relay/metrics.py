"""
Prometheus metrics for the SMS relay.

This module provides:
- HTTP request counter and latency histogram
- Inbound webhook outcome counter
- Draft, approval, context-lookup and reminder counters

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: processed, duplicate, invalid_signature, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total inbound SMS processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# mode: template, model, fallback
drafts_generated_total = Counter(
    "drafts_generated_total",
    "Draft replies generated",
    labelnames=["mode"]
)

approval_decisions_total = Counter(
    "approval_decisions_total",
    "Approval decisions by action and outcome",
    labelnames=["action", "outcome"]
)

context_lookup_failures_total = Counter(
    "context_lookup_failures_total",
    "Context lookups that failed or timed out",
    labelnames=["lookup"]
)

reminder_calls_total = Counter(
    "reminder_calls_total",
    "Reminder call attempts",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    normalized_path = path.split("?")[0]
    http_requests_total.labels(method=method, path=normalized_path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=normalized_path).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_draft(mode: str) -> None:
    drafts_generated_total.labels(mode=mode).inc()


def record_approval_decision(action: str, outcome: str) -> None:
    approval_decisions_total.labels(action=action, outcome=outcome).inc()


def record_lookup_failure(lookup: str) -> None:
    context_lookup_failures_total.labels(lookup=lookup).inc()


def record_reminder_call(result: str) -> None:
    reminder_calls_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
