from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from storeops_app.core.env import (
    STOREOPS_LOG_CAPTURE_ROOT,
    STOREOPS_LOG_JSON,
    STOREOPS_LOG_LEVEL,
    get_env,
    get_env_bool,
)

_LOGGING_CONFIGURED = False
TEXT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [job=%(job_id)s] %(message)s"
# Fields every record carries once it passes the import context filter.
IMPORT_CONTEXT_FIELDS = ("event", "job_id")
_RESERVED_LOG_RECORD_FIELDS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
    "asctime",
    *IMPORT_CONTEXT_FIELDS,
}


class ImportContextFilter(logging.Filter):
    """Give every record an ``event`` and ``job_id`` so formatters can rely on them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not str(getattr(record, "event", "") or "").strip():
            record.event = record.name.rsplit(".", 1)[-1]
        if not str(getattr(record, "job_id", "") or "").strip():
            record.job_id = "-"
        return True


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": getattr(record, "event", None),
            "job_id": None if getattr(record, "job_id", "-") == "-" else record.job_id,
            "message": record.getMessage(),
        }
        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_FIELDS and not key.startswith("_")
        }
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def build_log_handler(*, use_json: bool, level: int = logging.INFO) -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.addFilter(ImportContextFilter())
    handler.setFormatter(_JsonFormatter() if use_json else logging.Formatter(TEXT_LOG_FORMAT))
    return handler


def setup_app_logging(*, force: bool = False) -> None:
    global _LOGGING_CONFIGURED  # pylint: disable=global-statement
    if _LOGGING_CONFIGURED and not force:
        return

    level_name = get_env(STOREOPS_LOG_LEVEL, "INFO").upper() or "INFO"
    level = getattr(logging, level_name, logging.INFO)
    use_json = get_env_bool(STOREOPS_LOG_JSON, default=False)
    capture_root = get_env_bool(STOREOPS_LOG_CAPTURE_ROOT, default=False)
    handler = build_log_handler(use_json=use_json, level=level)

    app_logger = logging.getLogger("storeops_app")
    app_logger.handlers.clear()
    app_logger.addHandler(handler)
    app_logger.setLevel(level)
    app_logger.propagate = False

    if capture_root:
        root = logging.getLogger()
        root.handlers.clear()
        root.addHandler(handler)
        root.setLevel(level)

    logging.getLogger(__name__).info(
        "Import service logging configured. level=%s json=%s capture_root=%s",
        level_name,
        str(use_json).lower(),
        str(capture_root).lower(),
        extra={"event": "logging_configured"},
    )
    _LOGGING_CONFIGURED = True
