from __future__ import annotations

"""
Prometheus metrics and the /metrics exporter for StealthMax services.

Features
--------
- ASGI middleware recording:
    - http_requests_total{method,path,status}
    - http_request_duration_seconds histogram
    - http_inprogress_requests gauge
- Settlement and watcher metrics:
    - settlement_cycles_total{outcome}          outcome: success|failed|aborted|unassociated
    - settlement_step_failures_total{step}
    - watcher_blocks_total
    - watcher_matched_transfers_total
    - watcher_restarts_total
    - monitored_addresses
- A router serving the registry at /metrics (configurable).

Each ``Metrics`` owns its own CollectorRegistry, so several app instances (and
tests) never collide on metric names.

Usage
-----
    app = FastAPI()
    metrics = setup_metrics(app, service_name="stealthmax-substream", service_version="1.0.0")
    metrics.watcher_blocks.inc()
"""

import os
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI
from prometheus_client import (CONTENT_TYPE_LATEST, CollectorRegistry, Counter,
                               Gauge, Histogram, Info, generate_latest)
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send


# ------------------------------ Registry -------------------------------------


class Metrics:
    """
    Holder for registry and metric objects. Exposed via app.state.metrics.
    """

    def __init__(self, service_name: str = "stealthmax-substream", service_version: Optional[str] = None) -> None:
        self.registry = CollectorRegistry()

        # HTTP metrics
        self.http_inprogress = Gauge(
            "http_inprogress_requests",
            "In-progress HTTP requests",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "path", "status"],
            registry=self.registry,
        )
        self.http_request_duration_seconds = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "path", "status"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=self.registry,
        )

        # Settlement
        self.settlement_cycles = Counter(
            "settlement_cycles_total",
            "Settlement cycles by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.settlement_step_failures = Counter(
            "settlement_step_failures_total",
            "Failed settlement steps",
            ["step"],
            registry=self.registry,
        )

        # Watcher
        self.watcher_blocks = Counter(
            "watcher_blocks_total",
            "Blocks inspected by the chain watcher",
            registry=self.registry,
        )
        self.watcher_matched_transfers = Counter(
            "watcher_matched_transfers_total",
            "Transfers to monitored addresses",
            registry=self.registry,
        )
        self.watcher_restarts = Counter(
            "watcher_restarts_total",
            "Watch loop restarts after transport errors",
            registry=self.registry,
        )
        self.monitored_addresses = Gauge(
            "monitored_addresses",
            "Addresses in the current monitored snapshot",
            registry=self.registry,
        )

        self.service_info = Info("service", "Service metadata", registry=self.registry)
        payload = {"name": service_name}
        if service_version:
            payload["version"] = service_version
        self.service_info.info(payload)

    def render_latest(self) -> bytes:
        return generate_latest(self.registry)


# ------------------------------ Middleware -----------------------------------


def _extract_path_template(scope: Scope) -> str:
    """
    Low-cardinality path template from the matched route, falling back to the
    raw path.
    """
    route = scope.get("route")
    for attr in ("path_format", "path"):
        if route is not None and hasattr(route, attr):
            val = getattr(route, attr, None)
            if isinstance(val, str) and val:
                return val
    raw = scope.get("path") or (scope.get("raw_path") or b"").decode("latin-1", "ignore")
    return raw if isinstance(raw, str) else raw.decode("latin-1", "ignore")


class PrometheusMiddleware:
    def __init__(self, app: ASGIApp, metrics: Metrics):
        self.app = app
        self.metrics = metrics

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "GET")
        path_tmpl = _extract_path_template(scope)
        start = time.perf_counter()
        status_code = 500

        self.metrics.http_inprogress.labels(method, path_tmpl).inc()

        async def send_wrapped(message: Dict[str, Any]) -> None:
            nonlocal status_code
            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
            await send(message)

        try:
            await self.app(scope, receive, send_wrapped)
        finally:
            duration = time.perf_counter() - start
            labels = (method, path_tmpl, str(status_code))
            try:
                self.metrics.http_requests_total.labels(*labels).inc()
                self.metrics.http_request_duration_seconds.labels(*labels).observe(duration)
            finally:
                self.metrics.http_inprogress.labels(method, path_tmpl).dec()


# ------------------------------ Router ---------------------------------------


def create_metrics_router(metrics: Metrics, path: str = "/metrics") -> APIRouter:
    router = APIRouter()

    @router.get(path, include_in_schema=False)
    async def metrics_endpoint() -> Response:
        return Response(content=metrics.render_latest(), media_type=CONTENT_TYPE_LATEST)

    return router


# ------------------------------ Setup helper ---------------------------------


def setup_metrics(
    app: FastAPI,
    *,
    service_name: str = "stealthmax-substream",
    service_version: Optional[str] = None,
    path: Optional[str] = None,
    metrics: Optional[Metrics] = None,
) -> Metrics:
    """
    Wire Prometheus metrics into a FastAPI app: middleware, /metrics route and
    ``app.state.metrics``.
    """
    metrics = metrics or Metrics(service_name=service_name, service_version=service_version)
    app.add_middleware(PrometheusMiddleware, metrics=metrics)

    export_path = path or os.getenv("METRICS_PATH") or "/metrics"
    app.include_router(create_metrics_router(metrics, export_path))

    app.state.metrics = metrics
    return metrics


__all__ = [
    "Metrics",
    "PrometheusMiddleware",
    "create_metrics_router",
    "setup_metrics",
]
