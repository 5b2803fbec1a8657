from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
import shutil
import tempfile
from typing import Any, AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from storeops_app.imports.config import get_import_target, import_target_options
from storeops_app.imports.errors import ImportJobNotFoundError
from storeops_app.imports.pipeline import ImportPipeline
from storeops_app.imports.progress import is_terminal_snapshot
from storeops_app.imports.sources import LocalFileStreamProvider
from storeops_app.web.http.errors import ERROR_CODE_BAD_REQUEST, ApiError

LOGGER = logging.getLogger(__name__)
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

router = APIRouter(prefix="/api/imports")


def _pipeline(request: Request) -> ImportPipeline:
    return request.app.state.import_pipeline


def _spool_upload(source: Any, suffix: str) -> Path:
    handle, raw_path = tempfile.mkstemp(prefix="storeops_import_", suffix=suffix)
    with os.fdopen(handle, "wb") as target:
        shutil.copyfileobj(source, target)
    return Path(raw_path)


def sse_message(event: str, payload: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, default=str)}\n\n"


@router.get("/targets")
async def import_targets() -> dict[str, Any]:
    return {"ok": True, "targets": import_target_options()}


@router.post("/{target}", status_code=202)
async def upload_import(target: str, request: Request):
    import_target = get_import_target(target)
    form = await request.form()
    upload = form.get("file")
    if upload is None or isinstance(upload, str) or not getattr(upload, "filename", ""):
        raise ApiError(
            status_code=400,
            code=ERROR_CODE_BAD_REQUEST,
            message="Upload a CSV or Excel file in the 'file' field.",
        )

    file_name = str(upload.filename or "").strip()
    job_id = str(form.get("job_id", "") or "").strip() or None
    context = {key: str(form.get(key, "") or "").strip() for key in import_target.context_fields}

    spooled_path = await asyncio.to_thread(_spool_upload, upload.file, Path(file_name).suffix)
    await upload.close()
    provider = LocalFileStreamProvider(spooled_path, delete_after_read=True)
    try:
        started_job_id = _pipeline(request).launch_import(
            job_id,
            file_name,
            provider,
            target=import_target.key,
            context=context,
        )
    except Exception:
        provider.discard()
        raise

    LOGGER.info(
        "Import upload accepted. job_id=%s target=%s file=%s",
        started_job_id,
        import_target.key,
        file_name,
        extra={"event": "import_upload_accepted", "job_id": started_job_id},
    )
    return JSONResponse(
        {"ok": True, "job_id": started_job_id, "target": import_target.key},
        status_code=202,
    )


@router.get("/jobs")
async def import_jobs(request: Request) -> dict[str, Any]:
    return {"ok": True, "jobs": _pipeline(request).registry.list_jobs()}


@router.get("/jobs/{job_id}")
async def import_job_status(job_id: str, request: Request) -> dict[str, Any]:
    snapshot = _pipeline(request).get_job(job_id)
    if snapshot is None:
        raise ImportJobNotFoundError(f"Import job {job_id} was not found.")
    return {"ok": True, "job": snapshot}


async def _progress_events(
    pipeline: ImportPipeline,
    job_id: str,
    *,
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    subscription = pipeline.channel.subscribe(job_id)
    try:
        snapshot = pipeline.get_job(job_id)
        if snapshot is None:
            yield sse_message("error", {"job_id": job_id, "message": "Import job not found."})
            return
        yield sse_message("status", snapshot)
        if is_terminal_snapshot(snapshot):
            return
        while True:
            update = await subscription.next(timeout=heartbeat_seconds)
            if update is None:
                yield ": heartbeat\n\n"
                continue
            yield sse_message("progress", update)
            if is_terminal_snapshot(update):
                return
    finally:
        subscription.close()


@router.get("/jobs/{job_id}/events")
async def import_job_events(job_id: str, request: Request):
    pipeline = _pipeline(request)
    if pipeline.get_job(job_id) is None:
        raise ImportJobNotFoundError(f"Import job {job_id} was not found.")
    heartbeat_seconds = float(request.app.state.import_config.sse_heartbeat_seconds)
    return StreamingResponse(
        _progress_events(pipeline, job_id, heartbeat_seconds=heartbeat_seconds),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
