from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
import threading
from typing import Any
import uuid

from storeops_app.imports.errors import ImportJobNotFoundError, ImportJobStateError

LOGGER = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPhase(str, Enum):
    PARSING = "parsing"
    VALIDATING = "validating"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
_PHASE_ORDER = (JobPhase.PARSING, JobPhase.VALIDATING, JobPhase.WRITING, JobPhase.DONE)
_COUNTER_FIELDS = (
    "rows_parsed",
    "rows_valid",
    "rows_failed",
    "rows_written",
    "rows_skipped",
    "upload_progress",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class ImportProgress:
    phase: JobPhase = JobPhase.PARSING
    upload_progress: int = 100
    rows_parsed: int = 0
    rows_valid: int = 0
    rows_failed: int = 0
    rows_written: int = 0
    rows_skipped: int = 0
    header_row_index: int | None = None
    failed_phase: JobPhase | None = None
    throughput_rps: float | None = None
    eta_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "upload_progress": self.upload_progress,
            "rows_parsed": self.rows_parsed,
            "rows_valid": self.rows_valid,
            "rows_failed": self.rows_failed,
            "rows_written": self.rows_written,
            "rows_skipped": self.rows_skipped,
            "header_row_index": self.header_row_index,
            "failed_phase": self.failed_phase.value if self.failed_phase else None,
            "throughput_rps": self.throughput_rps,
            "eta_seconds": self.eta_seconds,
        }


@dataclass
class ImportJob:
    """Mutable record of one import run.

    Every mutator refreshes ``updated_at`` and refuses to run once the job
    has reached ``completed`` or ``failed``.
    """

    job_id: str
    target: str
    file_name: str
    status: JobStatus = JobStatus.PENDING
    progress: ImportProgress = field(default_factory=ImportProgress)
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _ensure_mutable(self, action: str) -> None:
        if self.is_terminal:
            raise ImportJobStateError(
                f"Import job {self.job_id} is {self.status.value}; cannot {action}."
            )

    def _touch(self, now: datetime | None) -> datetime:
        stamp = now or utc_now()
        self.updated_at = stamp
        return stamp

    def mark_processing(self, *, now: datetime | None = None) -> None:
        self._ensure_mutable("start processing")
        self.status = JobStatus.PROCESSING
        self._touch(now)

    def advance_phase(self, phase: JobPhase, *, now: datetime | None = None) -> None:
        self._ensure_mutable(f"enter phase {phase.value}")
        if phase == JobPhase.FAILED:
            raise ImportJobStateError("Use fail() to move a job into the failed phase.")
        current_index = _PHASE_ORDER.index(self.progress.phase)
        next_index = _PHASE_ORDER.index(phase)
        if next_index < current_index:
            raise ImportJobStateError(
                f"Import job {self.job_id} cannot move from {self.progress.phase.value} back to {phase.value}."
            )
        self.progress.phase = phase
        self._touch(now)

    def update_counters(self, *, now: datetime | None = None, **counters: Any) -> None:
        self._ensure_mutable("update counters")
        for name, value in counters.items():
            if name == "header_row_index":
                self.progress.header_row_index = None if value is None else int(value)
                continue
            if name not in _COUNTER_FIELDS:
                raise ImportJobStateError(f"Unknown import counter: {name}")
            setattr(self.progress, name, int(value))
        if self.progress.rows_written > self.progress.rows_valid:
            raise ImportJobStateError(
                f"Import job {self.job_id} reports {self.progress.rows_written} rows written "
                f"but only {self.progress.rows_valid} valid."
            )
        stamp = self._touch(now)
        self.refresh_throughput(now=stamp)

    def refresh_throughput(self, *, now: datetime | None = None) -> None:
        stamp = now or utc_now()
        elapsed_seconds = (stamp - self.started_at).total_seconds()
        if elapsed_seconds <= 0:
            return
        throughput = self.progress.rows_written / elapsed_seconds
        self.progress.throughput_rps = throughput
        remaining = max(0, self.progress.rows_valid - self.progress.rows_written)
        self.progress.eta_seconds = (remaining / throughput) if throughput > 0 else None

    def add_errors(self, messages: list[str], *, now: datetime | None = None) -> None:
        self._ensure_mutable("record errors")
        cleaned = [str(message).strip() for message in messages if str(message or "").strip()]
        if not cleaned:
            return
        self.errors.extend(cleaned)
        self._touch(now)

    def complete(self, *, now: datetime | None = None) -> None:
        self._ensure_mutable("complete")
        if self.progress.phase != JobPhase.WRITING:
            raise ImportJobStateError(
                f"Import job {self.job_id} can only complete from the writing phase."
            )
        if self.progress.rows_written != self.progress.rows_valid:
            raise ImportJobStateError(
                f"Import job {self.job_id} wrote {self.progress.rows_written} of {self.progress.rows_valid} valid rows."
            )
        stamp = self._touch(now)
        self.refresh_throughput(now=stamp)
        self.progress.eta_seconds = 0.0
        self.progress.phase = JobPhase.DONE
        self.status = JobStatus.COMPLETED
        self.finished_at = stamp

    def fail(self, message: str, *, now: datetime | None = None) -> None:
        self._ensure_mutable("fail")
        stamp = self._touch(now)
        text = str(message or "").strip() or "Import failed."
        self.errors.append(text)
        self.progress.failed_phase = self.progress.phase
        self.progress.phase = JobPhase.FAILED
        self.status = JobStatus.FAILED
        self.finished_at = stamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "target": self.target,
            "file_name": self.file_name,
            "status": self.status.value,
            "phase": self.progress.phase.value,
            "progress": self.progress.to_dict(),
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class ImportJobRegistry:
    """Process-wide job map owned by the composition root.

    The lock guards the mapping only. Each job is mutated by the single task
    running its pipeline.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, ImportJob] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create(
        self,
        job_id: str | None = None,
        *,
        target: str,
        file_name: str,
        now: datetime | None = None,
    ) -> ImportJob:
        key = str(job_id or "").strip() or new_job_id()
        stamp = now or utc_now()
        job = ImportJob(
            job_id=key,
            target=target,
            file_name=str(file_name or ""),
            started_at=stamp,
            updated_at=stamp,
        )
        with self._lock:
            if key in self._jobs:
                raise ImportJobStateError(f"Import job {key} already exists.")
            self._jobs[key] = job
        return job

    def get(self, job_id: str) -> ImportJob | None:
        with self._lock:
            return self._jobs.get(str(job_id or "").strip())

    def require(self, job_id: str) -> ImportJob:
        job = self.get(job_id)
        if job is None:
            raise ImportJobNotFoundError(f"Import job {job_id} was not found.")
        return job

    def snapshot(self, job_id: str) -> dict[str, Any] | None:
        job = self.get(job_id)
        return job.to_dict() if job is not None else None

    def list_jobs(self) -> list[dict[str, Any]]:
        with self._lock:
            jobs = list(self._jobs.values())
        return [job.to_dict() for job in sorted(jobs, key=lambda item: item.started_at)]

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(str(job_id or "").strip(), None) is not None

    def sweep(self, now: datetime | None = None, *, retention_seconds: float) -> list[str]:
        cutoff = (now or utc_now()) - timedelta(seconds=float(retention_seconds))
        with self._lock:
            expired = [job_id for job_id, job in self._jobs.items() if job.updated_at < cutoff]
            for job_id in expired:
                self._jobs.pop(job_id, None)
        if expired:
            LOGGER.info(
                "Swept expired import jobs. removed=%s",
                len(expired),
                extra={"event": "import_jobs_swept", "removed": len(expired)},
            )
        return expired
