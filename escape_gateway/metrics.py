"""Prometheus metrics for the escape gateway.

Metrics goals:
- low-cardinality labels only: never family, user, request or entry ids
- visibility into escape actions, seal/unseal volume, chunk commits,
  store lockdowns, rate-limit rejections and fail-open events
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from fastapi import Request


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "escape_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "escape_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
OPERATIONS_TOTAL = Counter(
    "escape_operations_total",
    "Gateway operations by outcome",
    ["operation", "outcome"],
)
ENTRIES_SEALED_TOTAL = Counter(
    "escape_entries_sealed_total",
    "Records sealed, by collection",
    ["collection"],
)
ENTRIES_UNSEALED_TOTAL = Counter(
    "escape_entries_unsealed_total",
    "Records unsealed, by collection",
    ["collection"],
)
CHUNK_COMMITS = Counter(
    "escape_chunk_commits_total",
    "Chunked batch commits",
    ["outcome"],
)
STORE_LOCKDOWN_TRIPS = Counter(
    "escape_store_lockdown_trips_total",
    "Times the store guard entered lockdown",
    ["op", "cause"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "escape_rate_limit_reject_total",
    "Total rate-limit rejections",
    ["endpoint"],
)
FAIL_OPEN_TOTAL = Counter(
    "escape_fail_open_total",
    "Checks that failed open after a storage error",
    ["component"],
)


def record_operation(operation: str, outcome: str) -> None:
    OPERATIONS_TOTAL.labels(operation=str(operation), outcome=str(outcome)).inc()


def record_sealed(collection: str, count: int) -> None:
    if count > 0:
        ENTRIES_SEALED_TOTAL.labels(collection=str(collection)).inc(count)


def record_unsealed(collection: str, count: int) -> None:
    if count > 0:
        ENTRIES_UNSEALED_TOTAL.labels(collection=str(collection)).inc(count)


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def record_fail_open(component: str) -> None:
    FAIL_OPEN_TOTAL.labels(component=str(component)).inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("ESCAPE_METRICS_ENABLED", True):
        return

    from fastapi.responses import Response

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            try:
                route = request.scope.get("route")
                # Route templates keep ids out of the label set.
                route_path = getattr(route, "path", None) or "unmatched"
                HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
                HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)
            except Exception:
                # metrics must never break the app
                pass

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None:
            try:
                ok = authorize(request)
            except Exception:
                ok = False
            if not ok:
                return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
