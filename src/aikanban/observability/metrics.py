"""Prometheus metrics for the HTTP app and the task relay.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters the relay and the chat proxy update directly.
"""

from __future__ import annotations

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Gauge, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "aikanban_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

LLM_LATENCY = Histogram(
    "aikanban_llm_latency_seconds",
    "Latency of external LLM completion calls",
    labelnames=("provider", "outcome"),
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

RELAY_CONNECTIONS = Gauge(
    "aikanban_relay_connections",
    "Socket clients currently subscribed to a task scope",
)

RELAY_MUTATIONS = Counter(
    "aikanban_relay_mutations_total",
    "Task mutation events handled by the relay",
    labelnames=("action", "outcome"),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths to their first two static segments."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        return "/api/" + segs[1]
    return "/" + segs[0]


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.endswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
