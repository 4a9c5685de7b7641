from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

"""Migration job aggregate, status enum and immutable snapshot.

State transitions: pending → running → (completed | failed), failed → running
(explicit retry, fresh run from record 0). Nothing leaves completed.

Job is owned by the orchestrator and only changes through its transition
methods; everybody else receives a JobSnapshot.
"""

__all__ = [
    "JobStatus",
    "ErrorKind",
    "JobError",
    "JobSnapshot",
    "Job",
    "InvalidStateError",
]


class InvalidStateError(Exception):
    """Raised when a job control request is not allowed in the current status."""


class JobStatus(Enum):
    """Status enum for the job lifecycle.

    - PENDING: Submitted, pipeline not started
    - RUNNING: Pipeline consuming records
    - COMPLETED: All records consumed and all batches committed
    - FAILED: Halted by a fatal error or cancellation
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.PENDING: (JobStatus.RUNNING,),
    JobStatus.RUNNING: (JobStatus.COMPLETED, JobStatus.FAILED),
    JobStatus.FAILED: (JobStatus.RUNNING,),
    JobStatus.COMPLETED: (),  # terminal
}


class ErrorKind(Enum):
    FORMAT_ERROR = "FormatError"
    WRITE_ERROR = "WriteError"
    CANCELLED = "Cancelled"
    INTERRUPTED = "Interrupted"  # process stopped while the job was running
    INTERNAL_ERROR = "InternalError"


@dataclass(frozen=True)
class JobError:
    """Terminal error recorded on a failed job."""
    kind: ErrorKind
    message: str
    detail: str | None = None
    record_number: int | None = None  # offending source record, when known
    transient: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "detail": self.detail,
            "record_number": self.record_number,
            "transient": self.transient,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> JobError:
        return JobError(
            kind=ErrorKind(data["kind"]),
            message=data["message"],
            detail=data.get("detail"),
            record_number=data.get("record_number"),
            transient=bool(data.get("transient", False)),
        )


def _iso(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of a Job at one point in time."""
    id: str
    file_name: str
    source_path: str
    status: JobStatus
    records_total: int = 0
    records_processed: int = 0  # rows inside committed batches
    records_skipped: int = 0  # deleted + corrupt + transform-rejected records
    batches_committed: int = 0
    attempt: int = 0  # number of runs started so far
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: JobError | None = None

    @property
    def progress_percent(self) -> float:
        if self.status is JobStatus.COMPLETED:
            return 100.0
        if self.records_total <= 0:
            return 0.0
        done = self.records_processed + self.records_skipped
        return round(min(done / self.records_total, 1.0) * 100, 1)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.ended_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "source_path": self.source_path,
            "status": self.status.value,
            "records_total": self.records_total,
            "records_processed": self.records_processed,
            "records_skipped": self.records_skipped,
            "batches_committed": self.batches_committed,
            "attempt": self.attempt,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "error": self.error.to_dict() if self.error else None,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> JobSnapshot:
        err = data.get("error")
        return JobSnapshot(
            id=data["id"],
            file_name=data["file_name"],
            source_path=data["source_path"],
            status=JobStatus(data["status"]),
            records_total=int(data.get("records_total", 0)),
            records_processed=int(data.get("records_processed", 0)),
            records_skipped=int(data.get("records_skipped", 0)),
            batches_committed=int(data.get("batches_committed", 0)),
            attempt=int(data.get("attempt", 0)),
            created_at=_parse_ts(data.get("created_at")),
            started_at=_parse_ts(data.get("started_at")),
            ended_at=_parse_ts(data.get("ended_at")),
            error=JobError.from_dict(err) if err else None,
        )


@dataclass
class Job:
    """Mutable job aggregate. All mutation goes through the methods below."""
    id: str
    source_path: Path
    status: JobStatus = JobStatus.PENDING
    records_total: int = 0
    records_processed: int = 0
    records_skipped: int = 0
    batches_committed: int = 0
    attempt: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: JobError | None = None
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def file_name(self) -> str:
        return self.source_path.name

    def can_transition_to(self, new_status: JobStatus) -> bool:
        return new_status in _TRANSITIONS[self.status]

    def _transition(self, new_status: JobStatus) -> None:
        if not self.can_transition_to(new_status):
            raise InvalidStateError(
                f"job {self.id}: cannot go from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def start(self) -> None:
        """pending → running, or failed → running for a retry (counters reset)."""
        with self._lock:
            self._transition(JobStatus.RUNNING)
            self.records_total = 0
            self.records_processed = 0
            self.records_skipped = 0
            self.batches_committed = 0
            self.attempt += 1
            self.started_at = datetime.now(UTC)
            self.ended_at = None
            self.error = None

    def set_total(self, total: int) -> None:
        with self._lock:
            self.records_total = total

    def add_skipped(self, count: int = 1) -> None:
        with self._lock:
            self.records_skipped += count

    def add_committed(self, rows: int) -> None:
        with self._lock:
            if self.status is not JobStatus.RUNNING:
                raise InvalidStateError(f"job {self.id}: progress update while {self.status.value}")
            self.records_processed += rows
            self.batches_committed += 1

    def complete(self) -> None:
        with self._lock:
            self._transition(JobStatus.COMPLETED)
            self.ended_at = datetime.now(UTC)

    def fail(self, error: JobError) -> None:
        with self._lock:
            self._transition(JobStatus.FAILED)
            self.error = error
            self.ended_at = datetime.now(UTC)

    def snapshot(self) -> JobSnapshot:
        with self._lock:
            return JobSnapshot(
                id=self.id,
                file_name=self.file_name,
                source_path=str(self.source_path),
                status=self.status,
                records_total=self.records_total,
                records_processed=self.records_processed,
                records_skipped=self.records_skipped,
                batches_committed=self.batches_committed,
                attempt=self.attempt,
                created_at=self.created_at,
                started_at=self.started_at,
                ended_at=self.ended_at,
                error=self.error,
            )

    @staticmethod
    def from_snapshot(snap: JobSnapshot) -> Job:
        """Rebuild a job from a persisted snapshot.

        A snapshot saved while running belongs to a process that is gone, so it
        comes back as failed (Interrupted) and can be retried.
        """
        job = Job(
            id=snap.id,
            source_path=Path(snap.source_path),
            status=snap.status,
            records_total=snap.records_total,
            records_processed=snap.records_processed,
            records_skipped=snap.records_skipped,
            batches_committed=snap.batches_committed,
            attempt=snap.attempt,
            created_at=snap.created_at or datetime.now(UTC),
            started_at=snap.started_at,
            ended_at=snap.ended_at,
            error=snap.error,
        )
        if job.status is JobStatus.RUNNING:
            job.fail(JobError(ErrorKind.INTERRUPTED, "process stopped while job was running"))
        return job
