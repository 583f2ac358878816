from __future__ import annotations

"""Prometheus metrics for the chat gateway.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for outbound sends, inbound routing and scheduled reconnects.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "chatlink_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

OUTBOUND_MESSAGES = Counter(
    "chatlink_outbound_messages_total",
    "Outbound chat sends by category and outcome",
    labelnames=("category", "outcome"),
)

INBOUND_MESSAGES = Counter(
    "chatlink_inbound_messages_total",
    "Inbound chat messages by route",
    labelnames=("route",),
)

RECONNECTS_SCHEDULED = Counter(
    "chatlink_reconnects_scheduled_total",
    "Automatic reconnects scheduled by recovery track",
    labelnames=("track",),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /connections/{id}) to a coarse label."""
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
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            # Metrics never fail a request
            pass
        return response

    return middleware
