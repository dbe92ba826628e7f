from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

from stageflow.context import get_correlation_id, get_organization_id


MAX_ERROR_LENGTH = 500

_KNOWN_FIELDS = (
    # http
    "method",
    "path",
    "status_code",
    "duration_ms",
    # automation
    "organization_id",
    "pipeline_id",
    "record_id",
    "stage_id",
    "from_stage_id",
    "to_stage_id",
    "automation_id",
    "trigger",
    "epoch",
    "request_id",
    "action_type",
    "status",
    "attempts",
    "run_after",
    # scheduler / worker
    "emitted",
    "scanned",
    "partition",
    "worker_id",
    "error",
)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        # may already be set through extra=
        if not getattr(record, "organization_id", None):
            record.organization_id = get_organization_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def extract_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key in _KNOWN_FIELDS:
        value = record.__dict__.get(key)
        if value is None:
            continue
        if isinstance(value, (uuid.UUID, datetime)):
            value = str(value)
        if key == "error" and isinstance(value, str):
            value = value[:MAX_ERROR_LENGTH]
        fields[key] = value
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = extract_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


class TextLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = " ".join(f"{key}={value}" for key, value in extract_fields(record).items())
        line = f"{record.levelname:<7} {record.name} {record.getMessage()}"
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            line = f"{line} correlation_id={correlation_id}"
        if fields:
            line = f"{line} {fields}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_stageflow_configured", False):
        return

    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    formatter: logging.Formatter = TextLogFormatter() if os.getenv("LOG_FORMAT", "json") == "text" else JsonLogFormatter()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._stageflow_configured = True  # type: ignore[attr-defined]
