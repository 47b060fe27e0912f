"""Prometheus metrics for the chat streaming service.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for the streaming pipeline itself.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "chatstream_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

STREAM_EVENTS = Counter(
    "chatstream_stream_events_total",
    "Wire events written to chat streams",
    labelnames=("kind",),
)

FALLBACKS = Counter(
    "chatstream_fallbacks_total",
    "Generation retries without tools",
    labelnames=("reason",),
)

# Generations can run for minutes on deep-reasoning models.
GENERATION_SECONDS = Histogram(
    "chatstream_generation_seconds",
    "Wall time of one generation attempt",
    labelnames=("adapter", "outcome"),
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)


def record_stream_event(kind: str) -> None:
    try:
        STREAM_EVENTS.labels(kind=kind).inc()
    except Exception:
        pass


def record_fallback(reason: str) -> None:
    try:
        FALLBACKS.labels(reason=reason).inc()
    except Exception:
        pass


def observe_generation(adapter: str, outcome: str, seconds: float) -> None:
    try:
        GENERATION_SECONDS.labels(adapter=adapter, outcome=outcome).observe(seconds)
    except Exception:
        pass


_SKIP_PATHS = ("/metrics", "/health")


def sanitize_path(path: str) -> str:
    """Collapse an unmatched path to its first segment (``/api/x/y`` -> ``/api``)."""

    head = (path or "").split("?", 1)[0].strip("/").split("/", 1)[0]
    return f"/{head}" if head else "/"


def route_label(request: Request) -> str:
    """Route template when the router matched (``/api/chat/stream``), else a sanitized path."""

    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template if isinstance(template, str) else sanitize_path(request.url.path)


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    """Latency middleware; for SSE responses this measures time to the first byte."""

    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        if request.url.path in _SKIP_PATHS:
            return await call_next(request)
        started = time.perf_counter()
        response = await call_next(request)
        try:
            REQUEST_LATENCY.labels(
                method=request.method, path=route_label(request), status=str(response.status_code)
            ).observe(time.perf_counter() - started)
        except Exception:
            pass
        return response

    return middleware
