from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_trigger_runs_total = Counter(
    "crm_trigger_runs_total",
    "Total trigger handler runs by entity type and phase",
    ["entity_type", "phase"],
)

crm_trigger_run_duration_seconds = Histogram(
    "crm_trigger_run_duration_seconds",
    "Trigger handler duration in seconds",
    ["entity_type", "phase"],
)

crm_trigger_guard_skips_total = Counter(
    "crm_trigger_guard_skips_total",
    "Total handler runs suppressed by the re-entrancy guard",
    ["guard"],
)

crm_trigger_validation_errors_total = Counter(
    "crm_trigger_validation_errors_total",
    "Total per-record validation errors attached by trigger handlers",
    ["entity_type", "phase"],
)

crm_notification_failures_total = Counter(
    "crm_notification_failures_total",
    "Total best-effort notification failures",
    ["backend"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_trigger_run(entity_type: str, phase: str, duration: float) -> None:
    crm_trigger_runs_total.labels(entity_type=entity_type, phase=phase).inc()
    crm_trigger_run_duration_seconds.labels(entity_type=entity_type, phase=phase).observe(duration)


def observe_trigger_guard_skip(guard: str) -> None:
    crm_trigger_guard_skips_total.labels(guard=guard).inc()


def observe_trigger_validation_errors(entity_type: str, phase: str, count: int) -> None:
    if count > 0:
        crm_trigger_validation_errors_total.labels(entity_type=entity_type, phase=phase).inc(count)


def observe_notification_failure(backend: str) -> None:
    crm_notification_failures_total.labels(backend=backend).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
