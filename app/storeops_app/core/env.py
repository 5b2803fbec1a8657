from __future__ import annotations

import os


TRUE_VALUES = {"1", "true", "yes", "y", "on"}

STOREOPS_ENV = "STOREOPS_ENV"
STOREOPS_LOG_LEVEL = "STOREOPS_LOG_LEVEL"
STOREOPS_LOG_JSON = "STOREOPS_LOG_JSON"
STOREOPS_LOG_CAPTURE_ROOT = "STOREOPS_LOG_CAPTURE_ROOT"
STOREOPS_ERROR_INCLUDE_DETAILS = "STOREOPS_ERROR_INCLUDE_DETAILS"
STOREOPS_LOCAL_DB_PATH = "STOREOPS_LOCAL_DB_PATH"

STOREOPS_IMPORT_BATCH_SIZE = "STOREOPS_IMPORT_BATCH_SIZE"
STOREOPS_IMPORT_PROGRESS_INTERVAL = "STOREOPS_IMPORT_PROGRESS_INTERVAL"
STOREOPS_IMPORT_HEADER_MATCH_THRESHOLD = "STOREOPS_IMPORT_HEADER_MATCH_THRESHOLD"
STOREOPS_IMPORT_YIELD_EVERY = "STOREOPS_IMPORT_YIELD_EVERY"
STOREOPS_IMPORT_MAX_ROW_ERRORS = "STOREOPS_IMPORT_MAX_ROW_ERRORS"
STOREOPS_IMPORT_RETENTION_SEC = "STOREOPS_IMPORT_RETENTION_SEC"
STOREOPS_IMPORT_SWEEP_INTERVAL_SEC = "STOREOPS_IMPORT_SWEEP_INTERVAL_SEC"
STOREOPS_SSE_HEARTBEAT_SEC = "STOREOPS_SSE_HEARTBEAT_SEC"


def get_env(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or "").strip()


def get_env_bool(name: str, *, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in TRUE_VALUES


def get_env_int(name: str, *, default: int, min_value: int | None = None) -> int:
    raw = get_env(name)
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    if min_value is not None:
        value = max(int(min_value), value)
    return value


def get_env_float(name: str, *, default: float, min_value: float | None = None) -> float:
    raw = get_env(name)
    try:
        value = float(raw) if raw else float(default)
    except ValueError:
        value = float(default)
    if min_value is not None:
        value = max(float(min_value), value)
    return value
