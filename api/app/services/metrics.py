"""
Prometheus Metrics Service

Provides application metrics for monitoring and alerting.
"""

import re
import time

from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
from starlette.requests import Request
from starlette.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware

# Application info
APP_INFO = Info("app", "Application information")
APP_INFO.info({
    "name": "AccessMonitor",
    "version": "0.1.0",
})

# Request metrics
REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"]
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0]
)

REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"]
)

# Scan metrics
SCANS_TOTAL = Counter(
    "scans_total",
    "Total number of executed scans",
    ["kind", "status"]  # kind: free/paid, status: completed/failed
)

SCANS_IN_PROGRESS = Gauge(
    "scans_in_progress",
    "Number of scans currently holding a browser session"
)

SCAN_DURATION = Histogram(
    "scan_duration_seconds",
    "Scan duration in seconds",
    buckets=[1, 5, 10, 20, 30, 45, 60, 90, 120, 180]
)

ISSUES_FOUND = Counter(
    "accessibility_issues_total",
    "Total accessibility issues found",
    ["impact"]
)

# Monitoring metrics
MONITORING_CLAIMS = Counter(
    "monitoring_claims_total",
    "Claim attempts on due monitoring targets",
    ["outcome"]  # won/lost
)

MONITORING_RUNS = Counter(
    "monitoring_runs_total",
    "Finished monitoring runs",
    ["trigger", "status"]
)

MONITORING_NOTIFICATIONS = Counter(
    "monitoring_notifications_total",
    "Worsening notifications",
    ["status"]  # sent, disabled, missing-recipient, no-worsening, provider-error
)

# Billing metrics
BILLING_EVENTS = Counter(
    "billing_webhook_events_total",
    "Billing webhook events",
    ["event", "outcome"]
)

# Auth metrics
AUTH_ATTEMPTS = Counter(
    "auth_attempts_total",
    "Total authentication attempts",
    ["type", "status"]  # type: login/register, status: success/failure
)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    async def dispatch(self, request: Request, call_next) -> Response:
        method = request.method
        path = self._normalize_path(request.url.path)

        if path == "/metrics":
            return await call_next(request)

        REQUESTS_IN_PROGRESS.labels(method=method, endpoint=path).inc()
        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.time() - start_time
            REQUEST_COUNT.labels(
                method=method,
                endpoint=path,
                status_code=status_code
            ).inc()
            REQUEST_LATENCY.labels(method=method, endpoint=path).observe(duration)
            REQUESTS_IN_PROGRESS.labels(method=method, endpoint=path).dec()

        return response

    def _normalize_path(self, path: str) -> str:
        """Normalize path by replacing UUIDs and IDs with placeholders."""
        path = re.sub(
            r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
            "{id}",
            path,
            flags=re.IGNORECASE
        )
        path = re.sub(r"/\d+(?=/|$)", "/{id}", path)
        return path


def get_metrics() -> Response:
    """Generate Prometheus metrics response."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_scan_started():
    SCANS_IN_PROGRESS.inc()


def record_scan_finished():
    SCANS_IN_PROGRESS.dec()


def record_scan_completed(kind: str, duration_seconds: float, issues_by_impact: dict):
    """Record scan completion with metrics."""
    SCANS_TOTAL.labels(kind=kind, status="completed").inc()
    SCAN_DURATION.observe(duration_seconds)

    for impact, count in issues_by_impact.items():
        if count > 0:
            ISSUES_FOUND.labels(impact=impact).inc(count)


def record_scan_failed(kind: str):
    """Record a scan failure."""
    SCANS_TOTAL.labels(kind=kind, status="failed").inc()


def record_claim(won: bool):
    MONITORING_CLAIMS.labels(outcome="won" if won else "lost").inc()


def record_monitoring_run(trigger: str, status: str):
    MONITORING_RUNS.labels(trigger=trigger, status=status).inc()


def record_notification(status: str):
    MONITORING_NOTIFICATIONS.labels(status=status).inc()


def record_billing_event(event: str, outcome: str):
    BILLING_EVENTS.labels(event=event, outcome=outcome).inc()


def record_auth_attempt(auth_type: str, success: bool):
    """Record authentication attempt."""
    status = "success" if success else "failure"
    AUTH_ATTEMPTS.labels(type=auth_type, status=status).inc()
