"""Prometheus metrics: HTTP traffic plus per-vendor invocation outcomes."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from genai_gateway.core.config import settings

APP_INFO = Info("genai_gateway", "GenAI gateway build info")
APP_INFO.info({"version": settings.app_version, "environment": settings.app_env})

# --- HTTP ---

REQUEST_COUNT = Counter(
    "http_requests_total",
    "HTTP requests by route and status",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "Time to response headers, by route",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

RATE_LIMITED = Counter(
    "rate_limited_requests_total",
    "Requests rejected by the per-client rate limiter",
    ["endpoint"],
)

# --- Vendors ---

PROVIDER_REQUESTS = Counter(
    "provider_requests_total",
    "Vendor invocations by outcome",
    ["provider", "operation", "outcome"],
)

PROVIDER_LATENCY = Histogram(
    "provider_request_duration_seconds",
    "Vendor call duration; time to first byte for streams",
    ["provider", "operation"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

_UNMATCHED = "unmatched"


def _route_label(request: Request) -> str:
    """Route template of the matched endpoint; unknown paths share one label."""
    route = request.scope.get("route")
    return getattr(route, "path", _UNMATCHED)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Count and time every request except scrapes of /metrics itself."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start

        path = _route_label(request)
        REQUEST_COUNT.labels(method=request.method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=request.method, path=path).observe(elapsed)
        return response


def metrics_response() -> Response:
    """Prometheus text exposition of the default registry."""
    return Response(content=generate_latest(), media_type="text/plain; version=0.0.4; charset=utf-8")
