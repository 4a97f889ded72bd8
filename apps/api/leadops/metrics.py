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

inbound_events_total = Counter(
    "leadops_inbound_events_total",
    "Inbound events by source and intake outcome",
    ["source", "outcome"],
)

commitments_breached_total = Counter(
    "leadops_commitments_breached_total",
    "Commitments marked breached",
    ["commitment_type"],
)

escalations_fired_total = Counter(
    "leadops_escalations_fired_total",
    "Escalation levels fired",
    ["level"],
)

sequence_messages_total = Counter(
    "leadops_sequence_messages_total",
    "Sequence step dispatches by channel and outcome",
    ["channel", "outcome"],
)

jobs_total = Counter(
    "leadops_jobs_total",
    "Periodic job runs by status",
    ["job_name", "status"],
)

job_duration_seconds = Histogram(
    "leadops_job_duration_seconds",
    "Periodic job duration in seconds",
    ["job_name"],
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


def observe_inbound_event(source: str, outcome: str) -> None:
    inbound_events_total.labels(source=source, outcome=outcome).inc()


def observe_commitment_breached(commitment_type: str) -> None:
    commitments_breached_total.labels(commitment_type=commitment_type).inc()


def observe_escalation_fired(level: int) -> None:
    escalations_fired_total.labels(level=str(level)).inc()


def observe_sequence_message(channel: str, outcome: str) -> None:
    sequence_messages_total.labels(channel=channel, outcome=outcome).inc()


def observe_job(job_name: str, status: str, duration: float) -> None:
    jobs_total.labels(job_name=job_name, status=status).inc()
    job_duration_seconds.labels(job_name=job_name).observe(duration)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
