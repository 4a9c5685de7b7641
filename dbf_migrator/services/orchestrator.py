from __future__ import annotations

import dataclasses
import logging
import re
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Any

from ..db.batch_insert import BatchMetrics, BatchWriter, ConnectionProvider
from ..logging.event_log import EventLog
from ..models.config_models import MigrationConfig, MigrationSettings
from ..models.event import CATEGORY_FILE, CATEGORY_MIGRATION
from ..models.job import ErrorKind, InvalidStateError, Job, JobError, JobSnapshot, JobStatus
from ..models.processing_result import BatchStatsAccumulator, DashboardStats, JobStat
from ..transform.lookup import LookupRegistry
from ..transform.pipeline import TransformPipeline
from .job_store import JobStore, MemoryJobStore
from .runner import JobRunner

"""Job orchestration for DBF -> PostgreSQL migrations.

The orchestrator owns every Job. Jobs run on a shared ThreadPoolExecutor
(max_concurrent_jobs); each run is a JobRunner. Callers only ever see frozen
JobSnapshot copies, either by asking (get_job/list_jobs) or through
subscribe(), which is called on every state change and after every committed
batch. Snapshots are persisted to the JobStore at the same points.

State machine: pending → running → completed | failed, failed → running.
"""

__all__ = [
    "MigrationOrchestrator",
    "SubmissionError",
]

logger = logging.getLogger(__name__)

JobSubscriber = Callable[[JobSnapshot], None]

_JOB_ID_RE = re.compile(r"^job-(\d+)$")


class SubmissionError(Exception):
    """File reference or job config rejected before a job was created."""


class MigrationOrchestrator:
    def __init__(
        self,
        config: MigrationConfig,
        pool: ConnectionProvider,
        *,
        lookups: LookupRegistry | None = None,
        events: EventLog | None = None,
        store: JobStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.pool = pool
        self.lookups = lookups if lookups is not None else LookupRegistry()
        self.events = events if events is not None else EventLog(config.logs_directory)
        self.store = store if store is not None else MemoryJobStore()
        self._sleep = sleep

        # fail fast on a bad rule set (TransformConfigError) before any job exists
        TransformPipeline(config.transforms, self.lookups, hash_salt=config.migration.hash_salt)

        self._executor = ThreadPoolExecutor(
            max_workers=config.migration.max_concurrent_jobs, thread_name_prefix="migrate"
        )
        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._settings: dict[str, MigrationSettings] = {}
        self._futures: dict[str, Future[None]] = {}
        self._cancel: dict[str, threading.Event] = {}
        self._batch_stats: dict[str, BatchStatsAccumulator] = {}
        self._subscribers: list[JobSubscriber] = []
        self._next_id = 1
        self._closed = False
        self._restore()

    # --- persistence / notification -------------------------------------------

    def _restore(self) -> None:
        for snap in self.store.load_all():
            job = Job.from_snapshot(snap)
            self._jobs[job.id] = job
            self._settings[job.id] = self.config.migration
            m = _JOB_ID_RE.match(job.id)
            if m:
                self._next_id = max(self._next_id, int(m.group(1)) + 1)
            if job.status is not snap.status:
                self.store.save(job.snapshot())
                self.events.warning(
                    CATEGORY_MIGRATION,
                    f"Job {job.id} was interrupted",
                    detail=f"{job.file_name}: marked failed, retry to run it again",
                    job_id=job.id,
                )
        if self._jobs:
            logger.info("restored %d job(s) from %s", len(self._jobs), type(self.store).__name__)

    def _notify(self, job: Job) -> None:
        # snapshot + save under one lock: the store holds the latest state
        with self._persist_lock:
            snap = job.snapshot()
            self.store.save(snap)
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(snap)
            except Exception:
                logger.exception("job subscriber failed job=%s", snap.id)

    def subscribe(self, callback: JobSubscriber) -> Callable[[], None]:
        """Push every snapshot change to `callback`. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    # --- job control ---------------------------------------------------------------

    def _job(self, job_id: str) -> Job:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise KeyError(f"unknown job: {job_id}") from None

    def _resolve_settings(self, job_config: MigrationSettings | Mapping[str, Any] | None) -> MigrationSettings:
        if job_config is None:
            return self.config.migration
        if isinstance(job_config, MigrationSettings):
            return job_config
        known = {f.name for f in dataclasses.fields(MigrationSettings)}
        unknown = sorted(set(job_config) - known)
        if unknown:
            raise SubmissionError(f"unknown job settings: {unknown}")
        overrides = dict(job_config)
        if "conflict_columns" in overrides:
            overrides["conflict_columns"] = tuple(overrides["conflict_columns"] or ())
        return dataclasses.replace(self.config.migration, **overrides)

    def submit_job(
        self,
        path: Path | str,
        job_config: MigrationSettings | Mapping[str, Any] | None = None,
        *,
        start: bool = True,
    ) -> str:
        """Register a DBF file as a new job (and start it unless start=False).

        Raises:
            SubmissionError: not a .dbf file, missing, or over max_file_size_mb
        """
        path = Path(path)
        settings = self._resolve_settings(job_config)
        if path.suffix.lower() != ".dbf":
            raise SubmissionError(f"only .dbf files can be migrated: {path.name}")
        if not path.is_file():
            raise SubmissionError(f"file not found: {path}")
        size = path.stat().st_size
        if size > settings.max_file_size_mb * 1024 * 1024:
            raise SubmissionError(
                f"{path.name} is {size / (1024 * 1024):.1f} MB, limit is {settings.max_file_size_mb} MB"
            )

        with self._lock:
            if self._closed:
                raise InvalidStateError("orchestrator is shut down")
            job_id = f"job-{self._next_id:03d}"
            self._next_id += 1
            job = Job(id=job_id, source_path=path)
            self._jobs[job_id] = job
            self._settings[job_id] = settings

        self.events.info(
            CATEGORY_FILE, f"File uploaded: {path.name}", detail=f"{size / 1024:.1f} KB", job_id=job_id
        )
        self._notify(job)
        if start:
            self.start_job(job_id)
        return job_id

    def _launch(self, job: Job) -> None:
        # caller holds self._lock
        if self._closed:
            raise InvalidStateError("orchestrator is shut down")
        previous = self._futures.get(job.id)
        if previous is not None and not previous.done():
            raise InvalidStateError(f"job {job.id} already has an active run")
        job.start()
        cancel_event = threading.Event()
        self._cancel[job.id] = cancel_event
        self._batch_stats[job.id] = BatchStatsAccumulator()
        self._futures[job.id] = self._executor.submit(
            self._run, job, self._settings[job.id], cancel_event
        )

    def start_job(self, job_id: str) -> JobSnapshot:
        with self._lock:
            job = self._job(job_id)
            if job.status is not JobStatus.PENDING:
                raise InvalidStateError(f"job {job_id} is {job.status.value}, only pending jobs can be started")
            self._launch(job)
        self._notify(job)
        return job.snapshot()

    def retry_job(self, job_id: str) -> JobSnapshot:
        """Run a failed job again from its first record (counters reset)."""
        with self._lock:
            job = self._job(job_id)
            if job.status is not JobStatus.FAILED:
                raise InvalidStateError(f"job {job_id} is {job.status.value}, only failed jobs can be retried")
            self._launch(job)
        self._notify(job)
        return job.snapshot()

    def cancel_job(self, job_id: str) -> None:
        """Request cancellation; it takes effect at the next batch boundary."""
        with self._lock:
            job = self._job(job_id)
            if job.status is not JobStatus.RUNNING:
                raise InvalidStateError(f"job {job_id} is {job.status.value}, only running jobs can be cancelled")
            self._cancel[job_id].set()
        self.events.info(CATEGORY_MIGRATION, f"Cancellation requested: {job.file_name}", job_id=job_id)

    def get_job(self, job_id: str) -> JobSnapshot:
        with self._lock:
            return self._job(job_id).snapshot()

    def list_jobs(self) -> list[JobSnapshot]:
        with self._lock:
            jobs = list(self._jobs.values())
        return [j.snapshot() for j in jobs]

    def wait(self, job_id: str, timeout: float | None = None) -> JobSnapshot:
        """Block until the job's current run has finished.

        Raises:
            TimeoutError: the run is still going after `timeout` seconds
        """
        with self._lock:
            job = self._job(job_id)
            future = self._futures.get(job_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeoutError:
                raise TimeoutError(f"job {job_id} still running after {timeout}s") from None
        return job.snapshot()

    def wait_all(self, timeout: float | None = None) -> list[JobSnapshot]:
        deadline = None if timeout is None else time.monotonic() + timeout
        for job_id in list(self._jobs):
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            self.wait(job_id, remaining)
        return self.list_jobs()

    def stats(self) -> DashboardStats:
        snaps = self.list_jobs()
        completed = sum(1 for s in snaps if s.status is JobStatus.COMPLETED)
        failed = sum(1 for s in snaps if s.status is JobStatus.FAILED)
        finished = completed + failed
        return DashboardStats(
            active_jobs=sum(1 for s in snaps if s.status is JobStatus.RUNNING),
            total_records=sum(s.records_processed for s in snaps),
            success_rate=round(completed / finished * 100, 1) if finished else 0.0,
        )

    def job_stat(self, job_id: str) -> JobStat:
        snap = self.get_job(job_id)
        accumulator = self._batch_stats.get(job_id)
        total_batches, avg_batch, p95_batch = accumulator.get_stats() if accumulator else (0, 0.0, 0.0)
        return JobStat(
            job_id=snap.id,
            file_name=snap.file_name,
            status=snap.status.value,
            processed_records=snap.records_processed,
            skipped_records=snap.records_skipped,
            elapsed_seconds=snap.duration_seconds or 0.0,
            total_batches=total_batches,
            avg_batch_seconds=avg_batch,
            p95_batch_seconds=p95_batch,
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work. Running jobs are cancelled at their next batch boundary."""
        with self._lock:
            self._closed = True
            for job_id, job in self._jobs.items():
                if job.status is JobStatus.RUNNING:
                    self._cancel[job_id].set()
        self._executor.shutdown(wait=wait)
        if wait:
            self.events.flush()

    def __enter__(self) -> MigrationOrchestrator:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.shutdown()

    # --- run --------------------------------------------------------------------

    def _run(self, job: Job, settings: MigrationSettings, cancel_event: threading.Event) -> None:
        try:
            attempt = job.snapshot().attempt
            self.events.info(
                CATEGORY_MIGRATION,
                f"Migration started: {job.file_name}" if attempt == 1 else f"Migration retried: {job.file_name}",
                detail=f"attempt {attempt}, table {self.config.database.table}",
                job_id=job.id,
            )
            accumulator = self._batch_stats[job.id]

            def on_metrics(metrics: BatchMetrics) -> None:
                accumulator.add_batch_time(metrics.elapsed_seconds)

            pipeline = TransformPipeline(self.config.transforms, self.lookups, hash_salt=settings.hash_salt)
            writer = BatchWriter(
                self.pool,
                self.config.database.table,
                pipeline.columns,
                max_retries=settings.max_retries,
                backoff_seconds=settings.retry_backoff_seconds,
                page_size=settings.batch_size,
                conflict_columns=settings.conflict_columns,
                metrics_callback=on_metrics,
                sleep=self._sleep,
            )
            runner = JobRunner(
                job,
                pipeline=pipeline,
                writer=writer,
                settings=settings,
                events=self.events,
                cancel_event=cancel_event,
                on_progress=lambda: self._notify(job),
            )
            writer.on_retry = runner.on_retry

            error = runner.run()
        except Exception as e:
            logger.exception("job %s crashed", job.id)
            error = JobError(ErrorKind.INTERNAL_ERROR, f"{type(e).__name__}: {e}")

        if error is None:
            job.complete()
            snap = job.snapshot()
            self.events.success(
                CATEGORY_MIGRATION,
                f"Migration completed: {job.file_name}",
                detail=(
                    f"{snap.records_processed} records migrated to {self.config.database.table}, "
                    f"{snap.records_skipped} skipped"
                ),
                job_id=job.id,
            )
        else:
            job.fail(error)
            snap = job.snapshot()
            detail = f"{error.message}; {snap.records_processed} committed, {snap.records_skipped} skipped"
            if error.kind is ErrorKind.CANCELLED:
                self.events.warning(
                    CATEGORY_MIGRATION, f"Migration cancelled: {job.file_name}", detail=detail, job_id=job.id
                )
            else:
                self.events.error(
                    CATEGORY_MIGRATION,
                    f"Migration failed: {job.file_name} ({error.kind.value})",
                    detail=detail,
                    job_id=job.id,
                )
        self._notify(job)
