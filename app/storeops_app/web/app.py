from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from storeops_app.core.config import ImportConfig
from storeops_app.imports.config import import_table_columns
from storeops_app.imports.errors import ImportPipelineError
from storeops_app.imports.jobs import ImportJobRegistry
from storeops_app.imports.pipeline import ImportPipeline, run_retention_sweeper
from storeops_app.imports.progress import ProgressChannel
from storeops_app.imports.writer import ImportStore
from storeops_app.infrastructure.db import LocalImportStore
from storeops_app.infrastructure.logging import setup_app_logging
from storeops_app.web.http.errors import ApiError, error_response
from storeops_app.web.routers.imports import router as imports_router

LOGGER = logging.getLogger(__name__)
PERF_LOGGER = logging.getLogger("storeops_app.perf")


def create_app(
    config: ImportConfig | None = None,
    store: ImportStore | None = None,
) -> FastAPI:
    setup_app_logging()
    app_config = config or ImportConfig.from_env()
    import_store = store or LocalImportStore(app_config.local_db_path, tables=import_table_columns())
    registry = ImportJobRegistry()
    channel = ProgressChannel()
    pipeline = ImportPipeline(registry, channel, import_store, app_config)

    @asynccontextmanager
    async def _app_lifespan(_app: FastAPI):
        ensure_tables = getattr(import_store, "ensure_tables", None)
        if callable(ensure_tables):
            await asyncio.to_thread(ensure_tables)
        sweeper = asyncio.create_task(
            run_retention_sweeper(
                registry,
                interval_seconds=app_config.sweep_interval_seconds,
                retention_seconds=app_config.retention_seconds,
            ),
            name="import-retention-sweeper",
        )
        LOGGER.info(
            "Import service started. env=%s batch_size=%s",
            app_config.env,
            app_config.batch_size,
            extra={"event": "app_startup", "env": app_config.env},
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            await pipeline.cancel_all()
            close = getattr(import_store, "close", None)
            if callable(close):
                try:
                    close()
                except Exception:
                    LOGGER.warning("Failed to close import store cleanly.", exc_info=True)

    app = FastAPI(title="Store Operations Import Service", lifespan=_app_lifespan)
    app.state.import_config = app_config
    app.state.import_registry = registry
    app.state.import_channel = channel
    app.state.import_store = import_store
    app.state.import_pipeline = pipeline

    @app.middleware("http")
    async def _request_id_middleware(request: Request, call_next):
        request_id = str(request.headers.get("x-request-id", "")).strip() or uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        PERF_LOGGER.debug(
            "Request handled. method=%s path=%s status=%s elapsed_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000.0,
            extra={"event": "request_handled", "request_id": request_id, "path": request.url.path},
        )
        return response

    for error_type in (ApiError, ImportPipelineError, StarletteHTTPException, RequestValidationError, Exception):
        app.add_exception_handler(error_type, error_response)

    @app.get("/api/health")
    async def health() -> dict:
        return {"ok": True, "env": app_config.env, "active_jobs": len(registry)}

    app.include_router(imports_router)
    return app
