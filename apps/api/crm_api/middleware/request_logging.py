from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_api.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("crm_api.request")

# Probe endpoints are scraped constantly; keep them out of the INFO stream.
QUIET_PATHS = frozenset({"/health", "/metrics"})


def _log_level(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.WARNING
    if path in QUIET_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Time each request, record it in the HTTP metrics and emit one ``http.request`` log line."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        path = resolve_http_path_label(request)
        fields = {"method": method, "path": path}

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - started
            observe_http_request(method=method, path=path, status=500, duration=duration)
            logger.error(
                "http.error",
                exc_info=True,
                extra={**fields, "status_code": 500, "duration_ms": round(duration * 1000, 2)},
            )
            raise

        duration = time.perf_counter() - started
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration)
        logger.log(
            _log_level(path, response.status_code),
            "http.request",
            extra={**fields, "status_code": response.status_code, "duration_ms": round(duration * 1000, 2)},
        )
        return response
