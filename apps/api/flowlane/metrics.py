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

automation_runs_total = Counter(
    "automation_runs_total",
    "Total automation engine invocations by trigger type",
    ["trigger_type"],
)

automation_run_duration_seconds = Histogram(
    "automation_run_duration_seconds",
    "Automation engine invocation duration in seconds",
    ["trigger_type"],
)

automation_executions_total = Counter(
    "automation_executions_total",
    "Total automation execution attempts by outcome",
    ["trigger_type", "status"],
)

automation_actions_total = Counter(
    "automation_actions_total",
    "Total automation actions by type and outcome",
    ["action_type", "status"],
)

automation_cascade_blocks_total = Counter(
    "automation_cascade_blocks_total",
    "Total cascades not scheduled by reason",
    ["reason"],
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
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_automation_run(trigger_type: str, duration: float) -> None:
    automation_runs_total.labels(trigger_type=trigger_type).inc()
    automation_run_duration_seconds.labels(trigger_type=trigger_type).observe(duration)


def observe_automation_execution(trigger_type: str, status: str) -> None:
    automation_executions_total.labels(trigger_type=trigger_type, status=status).inc()


def observe_automation_action(action_type: str, status: str) -> None:
    automation_actions_total.labels(action_type=action_type, status=status).inc()


def observe_cascade_block(reason: str) -> None:
    automation_cascade_blocks_total.labels(reason=reason).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
