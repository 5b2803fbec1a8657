from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from storeops_app.core.config import ImportConfig
from storeops_app.imports.config import DEFAULT_IMPORT_TARGET, ImportTarget, get_import_target
from storeops_app.imports.errors import MissingImportContextError
from storeops_app.imports.header_filter import filter_header_rows
from storeops_app.imports.jobs import ImportJob, ImportJobRegistry, JobPhase
from storeops_app.imports.normalizer import normalize_records
from storeops_app.imports.parsing import parse_upload
from storeops_app.imports.progress import ProgressChannel
from storeops_app.imports.sources import FileStreamProvider
from storeops_app.imports.writer import BatchedWriter, ImportStore

LOGGER = logging.getLogger(__name__)


def _require_context(target: ImportTarget, context: dict[str, Any] | None) -> dict[str, str]:
    values = {str(key): str(value or "").strip() for key, value in (context or {}).items()}
    missing = [key for key in target.context_fields if not values.get(key)]
    if missing:
        raise MissingImportContextError(
            f"Import target '{target.key}' requires: {', '.join(missing)}."
        )
    return {key: values[key] for key in target.context_fields}


class ImportPipeline:
    """Runs one upload through parse, header filter, validation and batched writes.

    Every stage reports progress by publishing the job snapshot. Stage errors
    fail the job; they are never raised to the caller of ``start_import``.
    """

    def __init__(
        self,
        registry: ImportJobRegistry,
        channel: ProgressChannel,
        store: ImportStore,
        config: ImportConfig | None = None,
    ) -> None:
        self.registry = registry
        self.channel = channel
        self.store = store
        self.config = config or ImportConfig()
        self._tasks: set[asyncio.Task] = set()

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        return self.registry.snapshot(job_id)

    def emit(self, job: ImportJob) -> None:
        self.channel.publish(job.to_dict())

    def prepare_job(
        self,
        job_id: str | None,
        file_name: str,
        *,
        target: str = DEFAULT_IMPORT_TARGET,
        context: dict[str, Any] | None = None,
    ) -> tuple[ImportJob, ImportTarget, dict[str, str]]:
        import_target = get_import_target(target)
        clean_context = _require_context(import_target, context)
        job = self.registry.create(job_id, target=import_target.key, file_name=file_name)
        LOGGER.info(
            "Import job created. job_id=%s target=%s file=%s",
            job.job_id,
            import_target.key,
            file_name,
            extra={"event": "import_job_created", "job_id": job.job_id, "target": import_target.key},
        )
        return job, import_target, clean_context

    async def start_import(
        self,
        job_id: str | None,
        file_name: str,
        provider: FileStreamProvider,
        *,
        target: str = DEFAULT_IMPORT_TARGET,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        job, import_target, clean_context = self.prepare_job(
            job_id,
            file_name,
            target=target,
            context=context,
        )
        await self.run_job(job, import_target, provider, context=clean_context)
        return job.to_dict()

    def launch_import(
        self,
        job_id: str | None,
        file_name: str,
        provider: FileStreamProvider,
        *,
        target: str = DEFAULT_IMPORT_TARGET,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Create the job now and run it as a background task on the running loop."""
        job, import_target, clean_context = self.prepare_job(
            job_id,
            file_name,
            target=target,
            context=context,
        )
        task = asyncio.create_task(
            self.run_job(job, import_target, provider, context=clean_context),
            name=f"import-{job.job_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job.job_id

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run_job(
        self,
        job: ImportJob,
        target: ImportTarget,
        provider: FileStreamProvider,
        *,
        context: dict[str, str],
    ) -> None:
        started = time.perf_counter()
        try:
            await self._run_stages(job, target, provider, context)
        except asyncio.CancelledError:
            if not job.is_terminal:
                job.fail("Import cancelled.")
                self.emit(job)
            raise
        except Exception as exc:
            LOGGER.exception(
                "Import job failed. job_id=%s phase=%s",
                job.job_id,
                job.progress.phase.value,
                extra={"event": "import_job_failed", "job_id": job.job_id},
            )
            if not job.is_terminal:
                job.fail(str(exc) or exc.__class__.__name__)
            self.emit(job)
            return
        LOGGER.info(
            "Import job completed. job_id=%s target=%s written=%s failed=%s elapsed_ms=%.2f",
            job.job_id,
            target.key,
            job.progress.rows_written,
            job.progress.rows_failed,
            (time.perf_counter() - started) * 1000.0,
            extra={
                "event": "import_job_completed",
                "job_id": job.job_id,
                "rows_written": job.progress.rows_written,
            },
        )

    async def _run_stages(
        self,
        job: ImportJob,
        target: ImportTarget,
        provider: FileStreamProvider,
        context: dict[str, str],
    ) -> None:
        job.mark_processing()
        self.emit(job)

        def _on_parsed(count: int) -> None:
            job.update_counters(rows_parsed=count)
            self.emit(job)

        raw_records = await parse_upload(
            provider,
            job.file_name,
            on_progress=_on_parsed,
            progress_interval=self.config.progress_interval,
        )
        job.update_counters(rows_parsed=len(raw_records))
        job.advance_phase(JobPhase.VALIDATING)
        self.emit(job)

        filtered = filter_header_rows(
            raw_records,
            target.header_vocabulary,
            threshold=self.config.header_match_threshold,
        )
        job.update_counters(
            rows_parsed=len(filtered.records),
            rows_skipped=filtered.skipped,
            header_row_index=filtered.header_row_index,
        )

        def _on_validated(valid: int, failed: int) -> None:
            job.update_counters(rows_valid=valid, rows_failed=failed)
            self.emit(job)

        result = await normalize_records(
            filtered.records,
            target,
            context=context,
            on_progress=_on_validated,
            yield_every=self.config.normalize_yield_every,
            max_errors=self.config.max_row_errors,
        )
        job.update_counters(rows_valid=len(result.records), rows_failed=result.failed)
        job.add_errors(result.errors)
        job.advance_phase(JobPhase.WRITING)
        self.emit(job)

        writer = BatchedWriter(self.store, batch_size=self.config.batch_size)
        await writer.write(job, target.table, result.records, on_batch=self.emit)
        job.complete()
        self.emit(job)


async def run_retention_sweeper(
    registry: ImportJobRegistry,
    *,
    interval_seconds: float,
    retention_seconds: float,
) -> None:
    """Remove jobs idle for longer than ``retention_seconds``, every ``interval_seconds``."""
    while True:
        await asyncio.sleep(max(0.01, float(interval_seconds)))
        try:
            registry.sweep(retention_seconds=retention_seconds)
        except Exception:
            LOGGER.exception(
                "Import job sweep failed.",
                extra={"event": "import_jobs_sweep_failed"},
            )
