from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from crm_api.context import get_correlation_id
from crm_api.core.config import get_settings
from crm_api.otel import current_trace_ids


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "lead_id",
    "contact_id",
    "company_id",
    "direction",
    "candidates",
    "matches",
    "fields_requested",
    "fields_applied",
    "company_created",
    "event_name",
    "error",
}
_MAX_ERROR_LENGTH = 500

_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    ids = current_trace_ids()
    record.trace_id, record.span_id = ids if ids else (None, None)
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; whitelisted ``extra`` values land under ``fields``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        trace_id = getattr(record, "trace_id", None)
        if trace_id:
            payload["trace_id"] = trace_id
            payload["span_id"] = getattr(record, "span_id", None)

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging(level_name: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_configured", False):
        return

    level = logging.getLevelName((level_name or get_settings().log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)
    root_logger._crm_configured = True  # type: ignore[attr-defined]
