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

workflow_runs_total = Counter(
    "workflow_runs_total",
    "Total workflow engine runs by status",
    ["status"],
)

workflow_run_duration_seconds = Histogram(
    "workflow_run_duration_seconds",
    "Workflow engine run duration in seconds",
)

workflow_notifications_total = Counter(
    "workflow_notifications_total",
    "Total in-app notifications created by the workflow engine",
    ["notification_type"],
)

workflow_emails_total = Counter(
    "workflow_emails_total",
    "Total workflow email sends by template and outcome",
    ["template", "status"],
)

workflow_entity_failures_total = Counter(
    "workflow_entity_failures_total",
    "Total per-entity failures captured by workflow processors",
    ["processor"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
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


def observe_workflow_run(status: str, duration: float) -> None:
    workflow_runs_total.labels(status=status).inc()
    workflow_run_duration_seconds.observe(duration)


def observe_workflow_notification(notification_type: str) -> None:
    workflow_notifications_total.labels(notification_type=notification_type).inc()


def observe_workflow_email(template: str, status: str) -> None:
    workflow_emails_total.labels(template=template, status=status).inc()


def observe_workflow_entity_failure(processor: str) -> None:
    workflow_entity_failures_total.labels(processor=processor).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
