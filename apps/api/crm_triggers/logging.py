from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from crm_triggers.context import get_correlation_id, get_log_context
from crm_triggers.core.config import get_settings


TRIGGER_FIELDS = ("entity_type", "phase", "depth", "guard")
EVENT_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "batch_size",
    "error_count",
    "recipient",
    "record_ids",
    "error",
)
MAX_ERROR_LENGTH = 500


class LogContextFilter(logging.Filter):
    """Fills in the correlation id and the running trigger where a record has none.

    Values passed through ``extra`` always win over the ambient context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    # only the correlation id: trigger fields may also arrive through ``extra``
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: envelope, the trigger section, then event fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }

        trigger = {key: getattr(record, key) for key in TRIGGER_FIELDS if getattr(record, key, None) is not None}
        if trigger:
            payload["trigger"] = trigger

        fields = {key: getattr(record, key) for key in EVENT_FIELDS if hasattr(record, key)}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_triggers_configured", False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._crm_triggers_configured = True  # type: ignore[attr-defined]
