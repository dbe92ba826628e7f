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

stage_transitions_total = Counter(
    "stageflow_stage_transitions_total",
    "Total stage transition requests by outcome",
    ["outcome"],
)

automation_firings_total = Counter(
    "stageflow_automation_firings_total",
    "Total automation firings marked in the firing log",
    ["trigger"],
)

action_requests_total = Counter(
    "stageflow_action_requests_total",
    "Total processed action requests by type and status",
    ["action_type", "status"],
)

action_request_duration_seconds = Histogram(
    "stageflow_action_request_duration_seconds",
    "Action request processing duration in seconds",
    ["action_type"],
)

duration_scan_duration_seconds = Histogram(
    "stageflow_duration_scan_duration_seconds",
    "Duration scan tick duration in seconds",
)

duration_scan_emitted_total = Counter(
    "stageflow_duration_scan_emitted_total",
    "Total action requests emitted by duration scans",
)

duration_scan_failures_total = Counter(
    "stageflow_duration_scan_failures_total",
    "Total failed duration scan ticks",
)

dead_letters_total = Counter(
    "stageflow_dead_letters_total",
    "Total action requests moved to the dead-letter store",
    ["action_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    if path == "/api/automation/pipelines/templates/{industry_id}":
        return path
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(outcome: str) -> None:
    stage_transitions_total.labels(outcome=outcome).inc()


def observe_firing(trigger: str, count: int = 1) -> None:
    if count > 0:
        automation_firings_total.labels(trigger=trigger).inc(count)


def observe_action_request(action_type: str, status: str, duration: float) -> None:
    action_requests_total.labels(action_type=action_type, status=status).inc()
    action_request_duration_seconds.labels(action_type=action_type).observe(duration)


def observe_scan(emitted: int, duration: float) -> None:
    duration_scan_duration_seconds.observe(duration)
    if emitted > 0:
        duration_scan_emitted_total.inc(emitted)


def observe_scan_failure() -> None:
    duration_scan_failures_total.inc()


def observe_dead_letter(action_type: str) -> None:
    dead_letters_total.labels(action_type=action_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
