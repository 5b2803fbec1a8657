from __future__ import annotations

from datetime import timedelta
import sys
from pathlib import Path

import pytest

APP_ROOT = Path(__file__).resolve().parents[1] / "app"
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from storeops_app.imports.errors import ImportJobNotFoundError, ImportJobStateError
from storeops_app.imports.jobs import ImportJob, ImportJobRegistry, JobPhase, JobStatus, utc_now


def _job_in_writing(valid: int = 10) -> ImportJob:
    job = ImportJob(job_id="job-1", target="pricelist", file_name="prices.csv")
    job.mark_processing()
    job.update_counters(rows_parsed=valid)
    job.advance_phase(JobPhase.VALIDATING)
    job.update_counters(rows_valid=valid, rows_failed=0)
    job.advance_phase(JobPhase.WRITING)
    return job


def test_new_job_starts_pending_in_parsing_phase() -> None:
    job = ImportJob(job_id="job-1", target="pricelist", file_name="prices.csv")
    snapshot = job.to_dict()
    assert snapshot["status"] == "pending"
    assert snapshot["phase"] == "parsing"
    assert snapshot["progress"]["upload_progress"] == 100
    assert snapshot["progress"]["rows_written"] == 0
    assert snapshot["errors"] == []
    assert snapshot["finished_at"] is None


def test_job_completes_only_when_every_valid_row_is_written() -> None:
    job = _job_in_writing(valid=10)
    job.update_counters(rows_written=4)
    with pytest.raises(ImportJobStateError):
        job.complete()

    job.update_counters(rows_written=10)
    job.complete()
    assert job.status == JobStatus.COMPLETED
    assert job.progress.phase == JobPhase.DONE
    assert job.progress.eta_seconds == 0.0
    assert job.finished_at is not None


def test_complete_requires_writing_phase() -> None:
    job = ImportJob(job_id="job-1", target="pricelist", file_name="prices.csv")
    job.mark_processing()
    with pytest.raises(ImportJobStateError):
        job.complete()


def test_rows_written_never_exceeds_rows_valid() -> None:
    job = _job_in_writing(valid=3)
    with pytest.raises(ImportJobStateError):
        job.update_counters(rows_written=4)


def test_phase_cannot_move_backwards() -> None:
    job = _job_in_writing()
    with pytest.raises(ImportJobStateError):
        job.advance_phase(JobPhase.PARSING)
    with pytest.raises(ImportJobStateError):
        job.advance_phase(JobPhase.FAILED)


def test_unknown_counter_is_rejected() -> None:
    job = ImportJob(job_id="job-1", target="pricelist", file_name="prices.csv")
    with pytest.raises(ImportJobStateError):
        job.update_counters(rows_bogus=1)


def test_fail_records_message_and_phase() -> None:
    job = _job_in_writing()
    job.fail("Batch 1 failed: disk full")
    snapshot = job.to_dict()
    assert snapshot["status"] == "failed"
    assert snapshot["phase"] == "failed"
    assert snapshot["progress"]["failed_phase"] == "writing"
    assert snapshot["errors"][-1] == "Batch 1 failed: disk full"


@pytest.mark.parametrize("terminal", ["completed", "failed"])
def test_terminal_job_rejects_every_mutation(terminal: str) -> None:
    job = _job_in_writing(valid=0)
    if terminal == "completed":
        job.complete()
    else:
        job.fail("boom")
    before = job.to_dict()

    with pytest.raises(ImportJobStateError):
        job.mark_processing()
    with pytest.raises(ImportJobStateError):
        job.advance_phase(JobPhase.DONE)
    with pytest.raises(ImportJobStateError):
        job.update_counters(rows_parsed=1)
    with pytest.raises(ImportJobStateError):
        job.add_errors(["late"])
    with pytest.raises(ImportJobStateError):
        job.complete()
    with pytest.raises(ImportJobStateError):
        job.fail("again")

    assert job.to_dict() == before


def test_throughput_and_eta_follow_written_rows() -> None:
    job = _job_in_writing(valid=100)
    job.update_counters(rows_written=50, now=job.started_at + timedelta(seconds=10))
    assert job.progress.throughput_rps == pytest.approx(5.0)
    assert job.progress.eta_seconds == pytest.approx(10.0)


def test_add_errors_ignores_blank_messages() -> None:
    job = ImportJob(job_id="job-1", target="pricelist", file_name="prices.csv")
    job.add_errors(["", "  ", "Row 2: missing required field kode_item."])
    assert job.errors == ["Row 2: missing required field kode_item."]


def test_registry_create_get_delete() -> None:
    registry = ImportJobRegistry()
    job = registry.create("job-1", target="pricelist", file_name="prices.csv")
    assert registry.get("job-1") is job
    assert "job-1" in registry
    assert registry.snapshot("job-1")["job_id"] == "job-1"
    assert len(registry) == 1

    with pytest.raises(ImportJobStateError):
        registry.create("job-1", target="pricelist", file_name="again.csv")

    assert registry.delete("job-1") is True
    assert registry.delete("job-1") is False
    assert registry.get("job-1") is None
    assert registry.snapshot("job-1") is None
    with pytest.raises(ImportJobNotFoundError):
        registry.require("job-1")


def test_registry_generates_ids_when_missing() -> None:
    registry = ImportJobRegistry()
    first = registry.create(None, target="pricelist", file_name="a.csv")
    second = registry.create("", target="pricelist", file_name="b.csv")
    assert first.job_id != second.job_id
    assert [item["job_id"] for item in registry.list_jobs()] == [first.job_id, second.job_id]


def test_registry_sweep_removes_only_stale_jobs_regardless_of_status() -> None:
    registry = ImportJobRegistry()
    now = utc_now()
    stale = registry.create("stale", target="pricelist", file_name="a.csv", now=now - timedelta(hours=25))
    stale.mark_processing(now=now - timedelta(hours=25))
    registry.create("fresh", target="pricelist", file_name="b.csv", now=now - timedelta(hours=1))

    removed = registry.sweep(now, retention_seconds=24 * 60 * 60)
    assert removed == ["stale"]
    assert "stale" not in registry
    assert "fresh" in registry
