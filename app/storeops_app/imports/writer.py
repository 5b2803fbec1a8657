from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Protocol

from storeops_app.imports.errors import ImportWriteError
from storeops_app.imports.jobs import ImportJob
from storeops_app.imports.normalizer import NormalizedRecord

LOGGER = logging.getLogger(__name__)

BatchCallback = Callable[[ImportJob], Awaitable[None] | None]


class ImportStore(Protocol):
    async def insert_batch(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        ...


@dataclass(frozen=True)
class WriteResult:
    rows_written: int
    batches: int


class BatchedWriter:
    """Writes normalized rows in fixed-size batches, one datastore call each.

    Batches run strictly in order. A rejected or under-confirmed batch stops
    the write; batches already committed stay committed.
    """

    def __init__(self, store: ImportStore, *, batch_size: int = 1000) -> None:
        self.store = store
        self.batch_size = max(1, int(batch_size))

    async def write(
        self,
        job: ImportJob,
        table: str,
        records: list[NormalizedRecord],
        *,
        on_batch: BatchCallback | None = None,
    ) -> WriteResult:
        rows_written = job.progress.rows_written
        batches = 0
        for offset in range(0, len(records), self.batch_size):
            batch = records[offset : offset + self.batch_size]
            batch_number = batches + 1
            try:
                confirmed = await self.store.insert_batch(table, batch)
            except ImportWriteError:
                raise
            except Exception as exc:
                raise ImportWriteError(f"Batch {batch_number} failed: {exc}") from exc

            confirmed_count = len(confirmed or [])
            if confirmed_count != len(batch):
                raise ImportWriteError(
                    f"Batch {batch_number} confirmed {confirmed_count} of {len(batch)} rows."
                )

            batches = batch_number
            rows_written += confirmed_count
            job.update_counters(rows_written=rows_written)
            LOGGER.debug(
                "Import batch written. job_id=%s batch=%s rows_written=%s",
                job.job_id,
                batch_number,
                rows_written,
                extra={"event": "import_batch_written", "job_id": job.job_id, "batch": batch_number},
            )
            if on_batch is not None:
                outcome = on_batch(job)
                if outcome is not None:
                    await outcome
        return WriteResult(rows_written=rows_written, batches=batches)
