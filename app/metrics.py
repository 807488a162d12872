"""
Prometheus metrics for the message board API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message store operation counter (operation, result)
- Counter of rows dropped because they failed to decode (table)

Metrics are stored in-memory using prometheus-client.
"""

import re

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

# Store operation outcomes
# operation: insert, list, delete, list_deletions
# result: created, listed, deleted, not_found, validation_error, storage_error
message_operations_total = Counter(
    "message_operations_total",
    "Total message store operation outcomes",
    labelnames=["operation", "result"]
)

# Rows skipped by the list operations because they could not be decoded
message_rows_skipped_total = Counter(
    "message_rows_skipped_total",
    "Rows excluded from list responses due to decode errors",
    labelnames=["table"]
)

# Request latency histogram in seconds
# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

_NUMERIC_SEGMENT = re.compile(r"/-?\d+(?=/|$)")


# =============================================================================
# Helper Functions
# =============================================================================

def normalize_path(path: str) -> str:
    """
    Collapse query strings and numeric path segments to keep label
    cardinality bounded (e.g., /messages/42 -> /messages/{server_id}).
    """
    path = path.split("?")[0]
    return _NUMERIC_SEGMENT.sub("/{server_id}", path)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = normalize_path(path)

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_message_operation(operation: str, result: str) -> None:
    """
    Record a message store operation outcome.

    Args:
        operation: insert, list, delete or list_deletions
        result: Outcome label, e.g. created, deleted, not_found,
            validation_error, storage_error
    """
    message_operations_total.labels(operation=operation, result=result).inc()


def record_rows_skipped(table: str, count: int = 1) -> None:
    """Count rows dropped from a list response."""
    message_rows_skipped_total.labels(table=table).inc(count)


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
