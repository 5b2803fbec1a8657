from __future__ import annotations

import asyncio
from datetime import timedelta
import io
import sys
from pathlib import Path

import pandas as pd
import pytest

APP_ROOT = Path(__file__).resolve().parents[1] / "app"
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from storeops_app.core.config import ImportConfig
from storeops_app.imports.config import import_table_columns
from storeops_app.imports.errors import MissingImportContextError, UnknownImportTargetError
from storeops_app.imports.jobs import ImportJobRegistry, utc_now
from storeops_app.imports.pipeline import ImportPipeline, run_retention_sweeper
from storeops_app.imports.progress import ProgressChannel
from storeops_app.imports.sources import BytesStreamProvider, LocalFileStreamProvider
from storeops_app.infrastructure.db import LocalImportStore


class _FailingStore:
    async def insert_batch(self, table: str, rows: list[dict]) -> list[dict]:
        raise RuntimeError("datastore offline")


class _BlockingProvider:
    def __init__(self) -> None:
        self.release = asyncio.Event()

    async def open_stream(self):
        await self.release.wait()
        yield b"kode_item\nITEM1\n"


def _pipeline(store=None, **config_overrides) -> ImportPipeline:
    config = ImportConfig(local_db_path=":memory:", **config_overrides)
    return ImportPipeline(
        ImportJobRegistry(),
        ProgressChannel(),
        store or LocalImportStore(":memory:", tables=import_table_columns()),
        config,
    )


def _drain(subscription) -> list[dict]:
    snapshots: list[dict] = []
    while True:
        try:
            snapshots.append(subscription._queue.get_nowait())
        except asyncio.QueueEmpty:
            return snapshots


def test_three_row_csv_scenario() -> None:
    pipeline = _pipeline(batch_size=10)
    raw = b"sn,kode_item,qty\nA1,ITEM1,5\n,ITEM2,3\n,,2"

    async def _run():
        subscription = pipeline.channel.subscribe("job-1")
        snapshot = await pipeline.start_import("job-1", "items.csv", BytesStreamProvider(raw))
        return snapshot, _drain(subscription)

    snapshot, events = asyncio.run(_run())
    progress = snapshot["progress"]
    assert snapshot["status"] == "completed"
    assert snapshot["phase"] == "done"
    assert progress["rows_parsed"] == 3
    assert progress["rows_valid"] == 2
    assert progress["rows_failed"] == 1
    assert progress["rows_written"] == 2
    assert progress["rows_valid"] + progress["rows_failed"] == progress["rows_parsed"]
    assert snapshot["errors"] == ["Row 3: missing required field kode_item."]

    writing_events = [item for item in events if item["phase"] == "writing" and item["progress"]["rows_written"]]
    assert len(writing_events) == 1
    assert events[-1]["status"] == "completed"
    phases = [item["phase"] for item in events]
    assert phases.index("validating") < phases.index("writing") < phases.index("done")

    frame = pipeline.store.fetch_rows("pricelist")
    assert list(frame["kode_item"]) == ["ITEM1", "ITEM2"]
    assert frame["sn"].iloc[0] == "A1"
    assert pd.isna(frame["sn"].iloc[1])


def test_batch_progress_is_monotonic_over_many_rows() -> None:
    pipeline = _pipeline(batch_size=1000, normalize_yield_every=500)
    raw = b"kode_item,normal price\n" + b"".join(f"ITEM{i},15000\n".encode() for i in range(2500))

    async def _run():
        subscription = pipeline.channel.subscribe("job-big")
        snapshot = await pipeline.start_import("job-big", "prices.csv", BytesStreamProvider(raw, chunk_size=4096))
        return snapshot, _drain(subscription)

    snapshot, events = asyncio.run(_run())
    written = [item["progress"]["rows_written"] for item in events if item["phase"] == "writing"]
    assert written == sorted(written)
    assert [value for value in written if value] == [1000, 2000, 2500]
    assert snapshot["progress"]["rows_written"] == 2500
    assert pipeline.store.count_rows("pricelist") == 2500


def test_validation_snapshots_report_running_counts() -> None:
    pipeline = _pipeline(normalize_yield_every=1000)
    lines = [(f"ITEM{i}" if i % 3 else "") + ",15000\n" for i in range(3000)]
    raw = b"kode_item,normal price\n" + "".join(lines).encode()

    async def _run():
        subscription = pipeline.channel.subscribe("job-v")
        snapshot = await pipeline.start_import("job-v", "prices.csv", BytesStreamProvider(raw))
        return snapshot, _drain(subscription)

    snapshot, events = asyncio.run(_run())
    validating = [
        (item["progress"]["rows_valid"], item["progress"]["rows_failed"])
        for item in events
        if item["phase"] == "validating"
    ]
    assert validating == [(0, 0), (666, 334), (1333, 667), (2000, 1000)]
    assert snapshot["progress"]["rows_valid"] == 2000
    assert snapshot["progress"]["rows_failed"] == 1000


def test_repeated_header_row_is_skipped_and_reported() -> None:
    pipeline = _pipeline()
    raw = (
        b"SN,Kode Item,Kelompok,Family,Normal Price\n"
        b"SN,Kode Item,Kelompok,Family,Normal Price\n"
        b'SN001,ITEM01,Group A,Fam1,"15.000"\n'
    )
    snapshot = asyncio.run(pipeline.start_import("job-h", "prices.csv", BytesStreamProvider(raw)))
    progress = snapshot["progress"]
    assert snapshot["status"] == "completed"
    assert progress["header_row_index"] == 0
    assert progress["rows_skipped"] == 1
    assert progress["rows_parsed"] == 1
    assert progress["rows_written"] == 1
    frame = pipeline.store.fetch_rows("pricelist")
    assert frame.iloc[0]["normal_price"] == pytest.approx(15000.0)


def test_spreadsheet_upload_runs_through_pipeline() -> None:
    buffer = io.BytesIO()
    pd.DataFrame(
        [
            {"NIK": "N001", "Nama Lengkap": "Budi", "Kota": "Bandung"},
            {"NIK": None, "Nama Lengkap": "Tanpa NIK", "Kota": "Jakarta"},
        ]
    ).to_excel(buffer, index=False, engine="openpyxl")
    pipeline = _pipeline()
    snapshot = asyncio.run(
        pipeline.start_import("job-x", "staff.xlsx", BytesStreamProvider(buffer.getvalue()), target="staff")
    )
    assert snapshot["status"] == "completed"
    assert snapshot["target"] == "staff"
    assert snapshot["progress"]["rows_valid"] == 1
    assert snapshot["progress"]["rows_failed"] == 1
    assert pipeline.store.fetch_rows("staff").iloc[0]["nama_lengkap"] == "Budi"


def test_transfer_items_carry_transfer_order_id(tmp_path: Path) -> None:
    upload = tmp_path / "to.csv"
    upload.write_bytes(b"S/N,Kode Item,Qty\nSN1,K1,2\n")
    pipeline = _pipeline()
    provider = LocalFileStreamProvider(upload, delete_after_read=True)
    snapshot = asyncio.run(
        pipeline.start_import("job-t", "to.csv", provider, target="transfer_items", context={"to_id": "TO-7"})
    )
    assert snapshot["status"] == "completed"
    row = pipeline.store.fetch_rows("to_itemlist").iloc[0]
    assert row["to_id"] == "TO-7"
    assert row["sn"] == "SN1"
    assert row["qty"] == 2
    assert not upload.exists()


def test_missing_context_is_rejected_before_job_creation() -> None:
    pipeline = _pipeline()
    with pytest.raises(MissingImportContextError):
        asyncio.run(
            pipeline.start_import("job-t", "to.csv", BytesStreamProvider(b"sn\nA\n"), target="transfer_items")
        )
    assert pipeline.get_job("job-t") is None


def test_unknown_target_is_rejected() -> None:
    pipeline = _pipeline()
    with pytest.raises(UnknownImportTargetError):
        asyncio.run(pipeline.start_import("job-u", "x.csv", BytesStreamProvider(b"a\n1\n"), target="discounts"))
    assert len(pipeline.registry) == 0


def test_write_failure_fails_job_at_writing_phase() -> None:
    pipeline = _pipeline(store=_FailingStore())
    snapshot = asyncio.run(
        pipeline.start_import("job-w", "prices.csv", BytesStreamProvider(b"kode_item\nITEM1\nITEM2\n"))
    )
    assert snapshot["status"] == "failed"
    assert snapshot["phase"] == "failed"
    assert snapshot["progress"]["failed_phase"] == "writing"
    assert snapshot["progress"]["rows_written"] == 0
    assert snapshot["errors"][-1] == "Batch 1 failed: datastore offline"


def test_parse_failure_fails_job_before_validation() -> None:
    pipeline = _pipeline()
    snapshot = asyncio.run(
        pipeline.start_import("job-p", "bad.csv", BytesStreamProvider(b'kode_item,note\nITEM1,"open\n'))
    )
    assert snapshot["status"] == "failed"
    assert snapshot["progress"]["failed_phase"] == "parsing"
    assert "CSV parsing error" in snapshot["errors"][-1]
    assert pipeline.store.count_rows("pricelist") == 0


def test_empty_workbook_fails_job_at_parsing() -> None:
    pipeline = _pipeline()
    snapshot = asyncio.run(pipeline.start_import("job-e", "empty.xlsx", BytesStreamProvider(b"")))
    assert snapshot["status"] == "failed"
    assert snapshot["progress"]["failed_phase"] == "parsing"
    assert "Excel parsing error" in snapshot["errors"][-1]


def test_launch_import_runs_in_background() -> None:
    pipeline = _pipeline()

    async def _run():
        job_id = pipeline.launch_import(None, "prices.csv", BytesStreamProvider(b"kode_item\nITEM1\n"))
        assert pipeline.get_job(job_id)["status"] in {"pending", "processing"}
        await pipeline.wait_idle()
        return pipeline.get_job(job_id)

    snapshot = asyncio.run(_run())
    assert snapshot["status"] == "completed"
    assert snapshot["progress"]["rows_written"] == 1


def test_cancelled_import_is_marked_failed() -> None:
    pipeline = _pipeline()
    provider = _BlockingProvider()

    async def _run():
        job_id = pipeline.launch_import("job-c", "prices.csv", provider)
        await asyncio.sleep(0.01)
        await pipeline.cancel_all()
        return pipeline.get_job(job_id)

    snapshot = asyncio.run(_run())
    assert snapshot["status"] == "failed"
    assert snapshot["errors"][-1] == "Import cancelled."


def test_retention_sweeper_removes_stale_jobs() -> None:
    registry = ImportJobRegistry()
    registry.create("old", target="pricelist", file_name="a.csv", now=utc_now() - timedelta(days=2))
    registry.create("new", target="pricelist", file_name="b.csv")

    async def _run() -> None:
        task = asyncio.create_task(
            run_retention_sweeper(registry, interval_seconds=0.01, retention_seconds=24 * 60 * 60)
        )
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())
    assert "old" not in registry
    assert "new" in registry
