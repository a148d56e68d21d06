from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from rowguard.context import LOG_CONTEXT_KEYS, get_log_context
from rowguard.core.config import Settings, get_settings


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = {
    "resolver",
    "resolvers",
    "level",
    "duration_ms",
    "cache_key",
    "ttl",
    "table",
    "operation",
    "decision",
    "policy",
    "field",
    "fields",
    "count",
    "key",
    "error",
}


def _inject_context(record: logging.LogRecord) -> None:
    log_context = get_log_context()
    for key, value in log_context.items():
        if not getattr(record, key, None):
            setattr(record, key, value)


class AuthorizationContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _inject_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _inject_context(record)
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **{key: getattr(record, key, None) for key in LOG_CONTEXT_KEYS},
        }

        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_"):
                continue
            if key in _BASE_RECORD_KEYS:
                continue
            if key in {"args", "msg"}:
                continue
            if key in _KNOWN_FIELDS:
                extras[key] = value

        if record.exc_info:
            extras["exception"] = self.formatException(record.exc_info)

        error_value = extras.get("error")
        if isinstance(error_value, str):
            extras["error"] = error_value[:500]

        payload["fields"] = extras
        return json.dumps(payload, default=str)


def configure_logging(settings: Settings | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_rowguard_configured", False):
        return

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(AuthorizationContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._rowguard_configured = True  # type: ignore[attr-defined]
