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

crm_match_searches_total = Counter(
    "crm_match_searches_total",
    "Total lead/contact match searches by direction",
    ["direction"],
)

crm_match_results_total = Counter(
    "crm_match_results_total",
    "Total matches returned above the score threshold",
    ["direction"],
)

crm_match_score = Histogram(
    "crm_match_score",
    "Scores of matches returned above the threshold",
    ["direction"],
    buckets=(60, 65, 70, 75, 80, 85, 90, 95, 100),
)

crm_enrichment_fields_total = Counter(
    "crm_enrichment_fields_total",
    "Requested enrichment fields by outcome",
    ["outcome"],
)

crm_companies_created_total = Counter(
    "crm_companies_created_total",
    "Companies created while resolving lead company names",
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


def observe_match_search(direction: str, scores: list[int]) -> None:
    crm_match_searches_total.labels(direction=direction).inc()
    if scores:
        crm_match_results_total.labels(direction=direction).inc(len(scores))
    for score in scores:
        crm_match_score.labels(direction=direction).observe(score)


def observe_enrichment_field(outcome: str) -> None:
    crm_enrichment_fields_total.labels(outcome=outcome).inc()


def observe_company_created() -> None:
    crm_companies_created_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
