from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from storeops_app.core.defaults import (
    DEFAULT_DEV_ENV_NAMES,
    DEFAULT_ENV_NAME,
    DEFAULT_IMPORT_BATCH_SIZE,
    DEFAULT_IMPORT_HEADER_MATCH_THRESHOLD,
    DEFAULT_IMPORT_MAX_ROW_ERRORS,
    DEFAULT_IMPORT_PROGRESS_INTERVAL,
    DEFAULT_IMPORT_RETENTION_SEC,
    DEFAULT_IMPORT_SWEEP_INTERVAL_SEC,
    DEFAULT_IMPORT_YIELD_EVERY,
    DEFAULT_LOCAL_DB_PATH,
    DEFAULT_SSE_HEARTBEAT_SEC,
)
from storeops_app.core.env import (
    STOREOPS_ENV,
    STOREOPS_IMPORT_BATCH_SIZE,
    STOREOPS_IMPORT_HEADER_MATCH_THRESHOLD,
    STOREOPS_IMPORT_MAX_ROW_ERRORS,
    STOREOPS_IMPORT_PROGRESS_INTERVAL,
    STOREOPS_IMPORT_RETENTION_SEC,
    STOREOPS_IMPORT_SWEEP_INTERVAL_SEC,
    STOREOPS_IMPORT_YIELD_EVERY,
    STOREOPS_LOCAL_DB_PATH,
    STOREOPS_SSE_HEARTBEAT_SEC,
    get_env,
    get_env_float,
    get_env_int,
)


DEV_ENV_NAMES = set(DEFAULT_DEV_ENV_NAMES)


def _repo_root() -> Path:
    # app/storeops_app/core/config.py -> repo root
    return Path(__file__).resolve().parents[3]


def _resolve_repo_relative_path(raw_path: str) -> str:
    value = str(raw_path or "").strip()
    if not value or value == ":memory:":
        return value
    path = Path(value)
    if path.is_absolute():
        return str(path)
    return str((_repo_root() / path).resolve())


@dataclass(frozen=True)
class ImportConfig:
    env: str = DEFAULT_ENV_NAME
    local_db_path: str = DEFAULT_LOCAL_DB_PATH
    batch_size: int = DEFAULT_IMPORT_BATCH_SIZE
    progress_interval: int = DEFAULT_IMPORT_PROGRESS_INTERVAL
    header_match_threshold: int = DEFAULT_IMPORT_HEADER_MATCH_THRESHOLD
    normalize_yield_every: int = DEFAULT_IMPORT_YIELD_EVERY
    max_row_errors: int = DEFAULT_IMPORT_MAX_ROW_ERRORS
    retention_seconds: float = float(DEFAULT_IMPORT_RETENTION_SEC)
    sweep_interval_seconds: float = float(DEFAULT_IMPORT_SWEEP_INTERVAL_SEC)
    sse_heartbeat_seconds: float = DEFAULT_SSE_HEARTBEAT_SEC

    @property
    def is_dev_env(self) -> bool:
        return self.env in DEV_ENV_NAMES

    @staticmethod
    def from_env() -> "ImportConfig":
        env_name = get_env(STOREOPS_ENV, DEFAULT_ENV_NAME).lower() or DEFAULT_ENV_NAME
        return ImportConfig(
            env=env_name,
            local_db_path=_resolve_repo_relative_path(
                get_env(STOREOPS_LOCAL_DB_PATH, DEFAULT_LOCAL_DB_PATH)
            ),
            batch_size=get_env_int(
                STOREOPS_IMPORT_BATCH_SIZE,
                default=DEFAULT_IMPORT_BATCH_SIZE,
                min_value=1,
            ),
            progress_interval=get_env_int(
                STOREOPS_IMPORT_PROGRESS_INTERVAL,
                default=DEFAULT_IMPORT_PROGRESS_INTERVAL,
                min_value=1,
            ),
            header_match_threshold=get_env_int(
                STOREOPS_IMPORT_HEADER_MATCH_THRESHOLD,
                default=DEFAULT_IMPORT_HEADER_MATCH_THRESHOLD,
                min_value=1,
            ),
            normalize_yield_every=get_env_int(
                STOREOPS_IMPORT_YIELD_EVERY,
                default=DEFAULT_IMPORT_YIELD_EVERY,
                min_value=1,
            ),
            max_row_errors=get_env_int(
                STOREOPS_IMPORT_MAX_ROW_ERRORS,
                default=DEFAULT_IMPORT_MAX_ROW_ERRORS,
                min_value=0,
            ),
            retention_seconds=get_env_float(
                STOREOPS_IMPORT_RETENTION_SEC,
                default=float(DEFAULT_IMPORT_RETENTION_SEC),
                min_value=1.0,
            ),
            sweep_interval_seconds=get_env_float(
                STOREOPS_IMPORT_SWEEP_INTERVAL_SEC,
                default=float(DEFAULT_IMPORT_SWEEP_INTERVAL_SEC),
                min_value=1.0,
            ),
            sse_heartbeat_seconds=get_env_float(
                STOREOPS_SSE_HEARTBEAT_SEC,
                default=DEFAULT_SSE_HEARTBEAT_SEC,
                min_value=1.0,
            ),
        )
