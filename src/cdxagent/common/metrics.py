"""Prometheus metrics for agent observability."""

import os
import time

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    multiprocess,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

# === Counters ===

AUTH_DECISIONS_TOTAL = Counter(
    "cdx_agent_auth_decisions_total",
    "Authentication gate decisions",
    ["decision", "reason"],  # decision: allow, deny
)

HTTP_REQUESTS_TOTAL = Counter(
    "cdx_agent_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

COMMAND_RUNS_TOTAL = Counter(
    "cdx_agent_command_runs_total",
    "Whitelisted command executions",
    ["command", "outcome"],  # outcome: success, failed, timeout, error
)

# === Histograms ===

HTTP_REQUEST_LATENCY = Histogram(
    "cdx_agent_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

COMMAND_LATENCY = Histogram(
    "cdx_agent_command_latency_seconds",
    "Whitelisted command latency in seconds",
    ["command"],
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0],
)


# === Helper Functions ===


def record_auth_decision(allowed: bool, reason: str | None) -> None:
    """Record an authentication gate decision."""
    AUTH_DECISIONS_TOTAL.labels(
        decision="allow" if allowed else "deny",
        reason=reason or "none",
    ).inc()


def record_http_request(
    method: str,
    endpoint: str,
    status: int,
    latency: float,
) -> None:
    """Record an HTTP request."""
    HTTP_REQUESTS_TOTAL.labels(
        method=method,
        endpoint=endpoint,
        status=str(status),
    ).inc()
    HTTP_REQUEST_LATENCY.labels(
        method=method,
        endpoint=endpoint,
    ).observe(latency)


def record_command_run(command: str, outcome: str, latency: float) -> None:
    """Record a whitelisted command execution."""
    COMMAND_RUNS_TOTAL.labels(command=command, outcome=outcome).inc()
    COMMAND_LATENCY.labels(command=command).observe(latency)


# === HTTP Endpoint ===


class MetricsMiddleware(BaseHTTPMiddleware):
    """HTTP request metrics middleware."""

    def __init__(self, app: ASGIApp, exclude_paths: list[str] | None = None) -> None:
        super().__init__(app)
        self._exclude_paths = set(exclude_paths or [])

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self._exclude_paths:
            return await call_next(request)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status=500,
                latency=time.perf_counter() - start,
            )
            raise

        record_http_request(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code,
            latency=time.perf_counter() - start,
        )
        return response


async def metrics_endpoint(_request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    multiproc_dir = os.environ.get("PROMETHEUS_MULTIPROC_DIR")
    if multiproc_dir:
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)  # type: ignore[no-untyped-call]
        return Response(
            generate_latest(registry),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return Response(
        generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
