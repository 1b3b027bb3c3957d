from __future__ import annotations

"""Prometheus metrics for the analysis API.

Adds an HTTP middleware that records request latency per method/path/status
and counters describing upstream stream processing.
"""

import logging
import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

_logger = logging.getLogger("personality.metrics")

REQUEST_LATENCY = Histogram(
    "personality_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

STREAM_RECORDS = Counter(
    "personality_stream_records_total",
    "Upstream stream records by classified kind",
    labelnames=("kind",),
)

STREAM_EXITS = Counter(
    "personality_stream_exits_total",
    "Finished upstream streams by exit reason",
    labelnames=("reason",),
)

PERSISTENCE = Counter(
    "personality_persistence_total",
    "Analysis persistence attempts by outcome",
    labelnames=("outcome",),
)


def count(counter: Counter, label: str) -> None:
    """Increment ``counter`` for ``label``; metrics never fail the caller."""
    try:
        counter.labels(label).inc()
    except Exception:
        _logger.debug("metric_increment_failed", exc_info=True)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /api/wordware/{username}) to a coarse label."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    return "/" + "/".join(segs[:2])


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
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
            _logger.debug("latency_observe_failed", exc_info=True)
        return response

    return middleware
