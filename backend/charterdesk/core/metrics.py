"""Prometheus metrics for the action link service.

This module provides application metrics for:
- Request latency and throughput
- Link lifecycle outcomes (issued, verified, consumed, rejected)
- Rate limit rejections and security events
- Audit log writes

Metrics are exposed at /metrics endpoint for Prometheus scraping.
"""

import re
import time

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from charterdesk.core.middleware import redact_tokens

UUID_PATTERN = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)

# HTTP request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Link lifecycle
action_links_issued_total = Counter(
    "action_links_issued_total",
    "Total action links issued",
    ["action_type"],
)

action_link_operations_total = Counter(
    "action_link_operations_total",
    "Verify and consume outcomes",
    ["operation", "result"],  # result: ok or an error kind
)

rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by a fixed-window limit",
    ["scope"],
)

security_events_total = Counter(
    "security_events_total",
    "Total security events",
    ["event_type", "severity"],
)

# Audit
audit_log_entries_total = Counter(
    "audit_log_entries_total",
    "Total audit log entries written",
    ["action"],
)

audit_log_write_failures_total = Counter(
    "audit_log_write_failures_total",
    "Audit log writes that failed and aborted their state change",
)


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def track_request_metrics(method: str, endpoint: str, status: int, duration: float):
    http_requests_total.labels(method=method, endpoint=endpoint, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)


def track_link_issued(action_type: str):
    action_links_issued_total.labels(action_type=action_type).inc()


def track_link_operation(operation: str, result: str):
    """Track a verify or consume outcome.

    Args:
        operation: "verify" or "consume"
        result: "ok", "replay", or the error kind that rejected the request
    """
    action_link_operations_total.labels(operation=operation, result=result).inc()


def track_rate_limit_rejection(scope: str):
    rate_limit_rejections_total.labels(scope=scope).inc()


def track_security_event(event_type: str, severity: str = "info"):
    security_events_total.labels(event_type=event_type, severity=severity).inc()


def track_audit_log(action: str, success: bool = True):
    """Track audit log write.

    Args:
        action: Audit action type
        success: Whether write was successful
    """
    if success:
        audit_log_entries_total.labels(action=action).inc()
    else:
        audit_log_write_failures_total.inc()


def normalize_path(path: str) -> str:
    """Collapse IDs and raw tokens so label cardinality stays bounded."""
    path = redact_tokens(path)
    path = UUID_PATTERN.sub("{id}", path)
    return re.sub(r"/\d+(?=/|$)", "/{id}", path)


class MetricsMiddleware:
    """ASGI middleware for tracking request metrics."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # Skip metrics endpoint itself
        path = scope.get("path", "")
        if path == "/metrics":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "UNKNOWN")
        start_time = time.time()
        status_code = 500  # Default in case of error

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration = time.time() - start_time
            track_request_metrics(method, normalize_path(path), status_code, duration)
