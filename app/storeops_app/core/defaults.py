from __future__ import annotations

# Environment and config defaults
DEFAULT_ENV_NAME = "dev"
DEFAULT_DEV_ENV_NAMES = ("dev", "development", "local")
DEFAULT_LOCAL_DB_PATH = "app/local/storeops_local.db"

# Import pipeline defaults
DEFAULT_IMPORT_BATCH_SIZE = 1000
DEFAULT_IMPORT_PROGRESS_INTERVAL = 1000
DEFAULT_IMPORT_HEADER_MATCH_THRESHOLD = 4
DEFAULT_IMPORT_YIELD_EVERY = 1000
DEFAULT_IMPORT_MAX_ROW_ERRORS = 100
DEFAULT_IMPORT_RETENTION_SEC = 24 * 60 * 60
DEFAULT_IMPORT_SWEEP_INTERVAL_SEC = 60 * 60

# Progress stream defaults
DEFAULT_SSE_HEARTBEAT_SEC = 30.0
DEFAULT_PROGRESS_QUEUE_SIZE = 256
