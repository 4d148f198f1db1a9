"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from orchestrator.core.config import settings

# --- Metrics ---

APP_INFO = Info("app", "Scoring orchestrator application info")
APP_INFO.info({"version": settings.app_version, "name": "scoring_orchestrator"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

PROVIDER_CALLS = Counter(
    "provider_calls_total",
    "Provider calls by outcome (success or error code)",
    ["provider", "status"],
)

CIRCUIT_EVENTS = Counter(
    "circuit_events_total",
    "Circuit breaker transitions and short-circuits",
    ["provider", "event"],
)

CACHE_HITS = Counter(
    "cache_hits_total",
    "Result cache hits",
    ["kind"],
)

CACHE_MISSES = Counter(
    "cache_misses_total",
    "Result cache misses",
    ["kind"],
)

QUEUE_JOBS = Counter(
    "queue_jobs_total",
    "Analysis jobs by lifecycle event",
    ["event"],
)

JOB_DURATION = Histogram(
    "queue_job_duration_seconds",
    "Job processing duration",
    ["status"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120],
)


# --- Middleware ---

# Normalize dynamic path segments to reduce cardinality
_PATH_PREFIXES = ("/api/v1/results/",)


def _normalize_path(path: str) -> str:
    """Replace job ids in paths with {id} to avoid high cardinality."""
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix) and len(path) > len(prefix):
            return f"{prefix}{{id}}"
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
