"""Prometheus metrics for the BallotGuard service.

Labels stay low-cardinality: never principal ids, ballot ids or origins.
Set BG_METRICS_ENABLED=0 to skip the middleware and the /metrics route.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "ballotguard_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "ballotguard_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
VOTES_TOTAL = Counter(
    "ballotguard_votes_total",
    "Vote attempts by outcome (ok or ineligibility reason)",
    ["outcome"],
)
LOGIN_ATTEMPTS_TOTAL = Counter(
    "ballotguard_login_attempts_total",
    "Login attempts by outcome",
    ["outcome"],
)
VERIFICATION_FACTORS_TOTAL = Counter(
    "ballotguard_verification_factors_total",
    "Recorded verification factor results",
    ["factor", "outcome"],
)
ALERTS_TOTAL = Counter(
    "ballotguard_alerts_total",
    "Anomaly alerts raised by the security monitor",
    ["kind", "severity"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "ballotguard_rate_limit_reject_total",
    "Total endpoint rate-limit rejections",
    ["endpoint"],
)
LOCKDOWN_ACTIVE = Gauge(
    "ballotguard_lockdown_active",
    "1 if storage is in lockdown / fail-closed mode",
)


def record_vote(outcome: str) -> None:
    VOTES_TOTAL.labels(outcome=str(outcome)).inc()


def record_login(outcome: str) -> None:
    LOGIN_ATTEMPTS_TOTAL.labels(outcome=str(outcome)).inc()


def record_factor(factor: str, outcome: str) -> None:
    VERIFICATION_FACTORS_TOTAL.labels(factor=str(factor), outcome=str(outcome)).inc()


def record_alert(kind: str, severity: str) -> None:
    ALERTS_TOTAL.labels(kind=str(kind), severity=str(severity)).inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app: FastAPI, authorize: Optional[Callable[[Request], bool]] = None) -> bool:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    Returns False when metrics are disabled by environment.
    """
    if not _env_bool("BG_METRICS_ENABLED", True):
        return False

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics")
    async def metrics_endpoint(request: Request) -> Response:
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return True
