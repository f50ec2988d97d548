"""Prometheus metrics for the gateway and the credit ledger."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("tiergate", "Tiered AI gateway info")
APP_INFO.info({"version": "1.0.0", "name": "tiergate"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds (streams: until headers are sent)",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)


UPSTREAM_REQUESTS = Counter(
    "tiergate_upstream_requests_total",
    "Upstream calls by backend and outcome",
    ["backend", "outcome"],
)

UPSTREAM_LATENCY = Histogram(
    "tiergate_upstream_latency_seconds",
    "Upstream call latency (time to full response or first chunk)",
    ["backend", "mode"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

UPSTREAM_RETRIES = Counter(
    "tiergate_upstream_retries_total",
    "Local retries after a rate-limited upstream call",
    ["backend"],
)

FAILOVERS = Counter(
    "tiergate_failovers_total",
    "Requests re-routed to the fallback backend",
    ["from_backend", "outcome"],
)

ADMISSION_DENIED = Counter(
    "tiergate_admission_denied_total",
    "Requests blocked by the credit ledger before dispatch",
    ["reason"],
)

CREDITS_DEBITED = Counter(
    "tiergate_credits_debited_total",
    "Credits charged after completed requests",
    ["tier"],
)

CREDITS_GRANTED = Counter(
    "tiergate_credits_granted_total",
    "Credits given back to accounts (rewards, referrals, bonuses)",
    ["source"],
)


# --- Middleware ---


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        # Label by route template; unmatched paths share one label
        route = request.scope.get("route")
        path = getattr(route, "path", None) or "unmatched"

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
