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

automation_rule_runs_total = Counter(
    "automation_rule_runs_total",
    "Automation rule executions by outcome",
    ["trigger_type", "status"],
)

automation_action_runs_total = Counter(
    "automation_action_runs_total",
    "Automation action executions by kind and outcome",
    ["kind", "status"],
)

automation_trigger_duration_seconds = Histogram(
    "automation_trigger_duration_seconds",
    "Time spent processing one trigger event",
    ["trigger_type"],
)

automation_engine_failures_total = Counter(
    "automation_engine_failures_total",
    "Trigger processing failures outside any single rule",
    ["stage"],
)

automation_webhook_attempts_total = Counter(
    "automation_webhook_attempts_total",
    "Outbound automation webhook attempts",
    ["outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_rule_run(trigger_type: str, status: str) -> None:
    automation_rule_runs_total.labels(trigger_type=trigger_type, status=status).inc()


def observe_action_run(kind: str, succeeded: bool) -> None:
    automation_action_runs_total.labels(kind=kind, status="success" if succeeded else "failed").inc()


def observe_trigger_duration(trigger_type: str, duration: float) -> None:
    automation_trigger_duration_seconds.labels(trigger_type=trigger_type).observe(duration)


def observe_engine_failure(stage: str) -> None:
    automation_engine_failures_total.labels(stage=stage).inc()


def observe_webhook_attempt(outcome: str) -> None:
    automation_webhook_attempts_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
