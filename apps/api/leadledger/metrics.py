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

lead_conversions_total = Counter(
    "lead_conversions_total",
    "Lead conversion attempts by outcome",
    ["outcome"],
)

lead_conversion_duration_seconds = Histogram(
    "lead_conversion_duration_seconds",
    "Lead conversion duration in seconds",
)

scope_denied_total = Counter(
    "scope_denied_total",
    "Requests denied by ownership scoping",
    ["resource", "operation"],
)

bulk_ingest_rows_total = Counter(
    "bulk_ingest_rows_total",
    "Bulk ingestion rows by outcome",
    ["outcome"],
)

storage_failures_total = Counter(
    "storage_failures_total",
    "Persistence failures surfaced as StorageError",
    ["operation"],
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


def observe_lead_conversion(outcome: str, duration: float | None = None) -> None:
    lead_conversions_total.labels(outcome=outcome).inc()
    if duration is not None:
        lead_conversion_duration_seconds.observe(duration)


def observe_scope_denied(resource: str, operation: str) -> None:
    scope_denied_total.labels(resource=resource, operation=operation).inc()


def observe_bulk_ingest_rows(outcome: str, count: int) -> None:
    if count > 0:
        bulk_ingest_rows_total.labels(outcome=outcome).inc(count)


def observe_storage_failure(operation: str) -> None:
    storage_failures_total.labels(operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
