from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

from ..db.batch_insert import BatchWriter, WriteError
from ..dbf.reader import CorruptRecordError, DbfReader, FormatError, open_dbf
from ..logging.event_log import EventLog
from ..models.config_models import MigrationSettings
from ..models.event import CATEGORY_DATABASE, CATEGORY_FILE, CATEGORY_TRANSFORM
from ..models.job import ErrorKind, Job, JobError
from ..models.transformed_row import Batch, CommitResult
from ..transform.pipeline import TransformError, TransformPipeline

"""One run attempt of a migration job.

Reader thread → bounded queue → transform thread → bounded queue → writer
(the job's own thread). A slow database fills the queues and blocks the
reader instead of buffering the whole file.

Record-level problems (corrupt record, transform rejection) are counted as
skipped and reported as warning events; they never leave this module.
File- and batch-level problems end the run and come back as a JobError.
"""

__all__ = [
    "JobRunner",
    "WARNING_EVENT_LIMIT",
]

logger = logging.getLogger(__name__)

WARNING_EVENT_LIMIT = 100  # per run; further record warnings are only counted
_POLL_SECONDS = 0.1


class _End:
    pass


_END = _End()


@dataclass(frozen=True)
class _StageFailure:
    error: BaseException


def _put(q: queue.Queue, item: Any, stop: threading.Event) -> bool:
    while not stop.is_set():
        try:
            q.put(item, timeout=_POLL_SECONDS)
            return True
        except queue.Full:
            continue
    return False


def _get(q: queue.Queue, stop: threading.Event) -> Any:
    while not stop.is_set():
        try:
            return q.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            continue
    return None


class _Committer:
    """Commits batches either one at a time (strict ordering) or overlapped."""

    def __init__(
        self,
        writer: BatchWriter,
        on_commit: Callable[[CommitResult], None],
        *,
        strict: bool,
        max_inflight: int,
        name: str,
    ) -> None:
        self._writer = writer
        self._on_commit = on_commit
        self._executor = (
            None if strict else ThreadPoolExecutor(max_workers=max_inflight, thread_name_prefix=name)
        )
        self._max_inflight = max_inflight
        self._inflight: deque[Future[CommitResult]] = deque()
        self._error: WriteError | None = None

    def _collect(self, done: set[Future[CommitResult]]) -> None:
        for fut in list(self._inflight):
            if fut not in done:
                continue
            self._inflight.remove(fut)
            try:
                self._on_commit(fut.result())
            except WriteError as e:
                if self._error is None:
                    self._error = e

    def submit(self, batch: Batch) -> WriteError | None:
        if self._executor is None:
            try:
                self._on_commit(self._writer.write(batch))
            except WriteError as e:
                return e
            return None

        if self._error is not None:
            return self._error
        self._inflight.append(self._executor.submit(self._writer.write, batch))
        while len(self._inflight) >= self._max_inflight:
            done, _ = wait(self._inflight, return_when=FIRST_COMPLETED)
            self._collect(done)
        return self._error

    def drain(self) -> WriteError | None:
        if self._executor is None:
            return None
        if self._inflight:
            done, _ = wait(self._inflight)
            self._collect(done)
        self._executor.shutdown(wait=True)
        return self._error


class JobRunner:
    """Runs one attempt of `job`. Counters on the job are updated as it goes."""

    def __init__(
        self,
        job: Job,
        *,
        pipeline: TransformPipeline,
        writer: BatchWriter,
        settings: MigrationSettings,
        events: EventLog,
        cancel_event: threading.Event,
        on_progress: Callable[[], None] | None = None,
    ) -> None:
        self.job = job
        self.pipeline = pipeline
        self.writer = writer
        self.settings = settings
        self.events = events
        self.cancel_event = cancel_event
        self._on_progress = on_progress
        self._warning_events = 0
        self._suppressed_warnings = 0
        self._warn_lock = threading.Lock()

    # --- events -----------------------------------------------------------

    def _record_warning(self, category: str, message: str, detail: str | None = None) -> None:
        with self._warn_lock:
            if self._warning_events >= WARNING_EVENT_LIMIT:
                self._suppressed_warnings += 1
                return
            self._warning_events += 1
        self.events.warning(category, message, detail=detail, job_id=self.job.id)

    # --- stages -----------------------------------------------------------

    def _read_stage(self, reader: DbfReader, out: queue.Queue, stop: threading.Event) -> None:
        deleted_seen = 0
        try:
            while not stop.is_set():
                try:
                    raw = next(reader)
                except StopIteration:
                    break
                except CorruptRecordError as e:
                    self.job.add_skipped()
                    self._record_warning(CATEGORY_FILE, f"Corrupt record {e.record_number} skipped", e.reason)
                    continue
                finally:
                    if reader.deleted_count != deleted_seen:
                        self.job.add_skipped(reader.deleted_count - deleted_seen)
                        deleted_seen = reader.deleted_count
                if not _put(out, raw, stop):
                    return
            else:
                return
            if reader.unread_count:
                self.job.add_skipped(reader.unread_count)
                self._record_warning(
                    CATEGORY_FILE,
                    "File ended before the declared record count",
                    f"{reader.unread_count} records missing",
                )
            _put(out, _END, stop)
        except Exception as e:
            logger.exception("reader stage failed job=%s", self.job.id)
            _put(out, _StageFailure(e), stop)

    def _transform_stage(self, inbox: queue.Queue, out: queue.Queue, stop: threading.Event) -> None:
        while True:
            item = _get(inbox, stop)
            if item is None:
                return
            if item is _END or isinstance(item, _StageFailure):
                _put(out, item, stop)
                return
            try:
                row = self.pipeline.apply(item)
            except TransformError as e:
                self.job.add_skipped()
                self._record_warning(CATEGORY_TRANSFORM, f"Record {e.record_number} skipped", str(e))
                continue
            except Exception as e:
                logger.exception("transform stage failed job=%s", self.job.id)
                _put(out, _StageFailure(e), stop)
                return
            for warning in row.warnings:
                self._record_warning(CATEGORY_TRANSFORM, f"Record {row.record_number}: {warning}")
            if not _put(out, row, stop):
                return

    def _on_commit(self, result: CommitResult) -> None:
        self.job.add_committed(result.rows)
        logger.debug(
            "job=%s batch=%d rows=%d records=%s-%s attempts=%d",
            self.job.id,
            result.batch_number,
            result.rows,
            result.first_record,
            result.last_record,
            result.attempts,
        )
        if self._on_progress is not None:
            self._on_progress()

    def _cancelled(self) -> JobError:
        snap = self.job.snapshot()
        return JobError(
            ErrorKind.CANCELLED,
            "cancelled by user",
            detail=f"{snap.records_processed} records committed before cancellation",
        )

    def _write_stage(self, inbox: queue.Queue, stop: threading.Event) -> JobError | None:
        committer = _Committer(
            self.writer,
            self._on_commit,
            strict=self.settings.strict_ordering,
            max_inflight=self.settings.max_inflight_batches,
            name=f"{self.job.id}-commit",
        )
        batch = Batch(number=1)
        error: JobError | None = None
        write_error: WriteError | None = None
        while True:
            item = _get(inbox, stop)
            if item is None:
                break
            if isinstance(item, _StageFailure):
                kind = ErrorKind.FORMAT_ERROR if isinstance(item.error, FormatError) else ErrorKind.INTERNAL_ERROR
                error = JobError(kind, str(item.error))
                break
            if item is _END:
                if self.cancel_event.is_set():
                    error = self._cancelled()
                elif batch.rows:
                    write_error = committer.submit(batch)
                break
            batch.rows.append(item)
            if len(batch) >= self.settings.batch_size:
                # batch boundary: cancellation takes effect here, never mid-commit
                if self.cancel_event.is_set():
                    error = self._cancelled()
                    break
                write_error = committer.submit(batch)
                if write_error is not None:
                    break
                batch = Batch(number=batch.number + 1)

        write_error = committer.drain() or write_error
        if write_error is not None:
            return JobError(
                ErrorKind.WRITE_ERROR,
                str(write_error),
                detail=f"batch {write_error.batch_number}, {write_error.attempts} attempt(s)",
                record_number=write_error.record_number,
                transient=write_error.transient,
            )
        if error is not None and error.kind is ErrorKind.CANCELLED:
            # commits still in flight when cancelling may have landed since
            return self._cancelled()
        return error

    # --- entry point ----------------------------------------------------------

    def run(self) -> JobError | None:
        """Execute the run. Returns None on success, the terminal error otherwise."""
        job = self.job
        try:
            reader = open_dbf(
                job.source_path,
                encoding=self.settings.encoding,
                include_deleted=self.settings.include_deleted,
            )
        except FormatError as e:
            return JobError(ErrorKind.FORMAT_ERROR, str(e))

        with reader:
            job.set_total(reader.records_total)
            self.events.info(
                CATEGORY_FILE,
                f"Reading DBF file structure: {job.file_name}",
                detail=(
                    f"{reader.records_total} records, {len(reader.fields)} fields, "
                    f"encoding {reader.encoding}"
                ),
                job_id=job.id,
            )
            missing = self.pipeline.missing_sources(reader.header.field_names)
            if missing:
                return JobError(
                    ErrorKind.FORMAT_ERROR,
                    f"{job.file_name} lacks source fields required by the transforms: {missing}",
                )
            for table in self.pipeline.missing_lookup_tables():
                self.events.warning(
                    CATEGORY_TRANSFORM,
                    f"Lookup table {table!r} is not loaded",
                    detail="lookups on it will resolve to null",
                    job_id=job.id,
                )

            raw_q: queue.Queue = queue.Queue(maxsize=self.settings.queue_size)
            row_q: queue.Queue = queue.Queue(maxsize=self.settings.queue_size)
            stop = threading.Event()
            threads = [
                threading.Thread(
                    target=self._read_stage, args=(reader, raw_q, stop), name=f"{job.id}-read", daemon=True
                ),
                threading.Thread(
                    target=self._transform_stage,
                    args=(raw_q, row_q, stop),
                    name=f"{job.id}-transform",
                    daemon=True,
                ),
            ]
            for t in threads:
                t.start()
            try:
                error = self._write_stage(row_q, stop)
            finally:
                stop.set()
                for t in threads:
                    t.join()

        if self._suppressed_warnings:
            self.events.warning(
                CATEGORY_TRANSFORM,
                f"{self._suppressed_warnings} further record warnings not shown",
                job_id=job.id,
            )
        if error is None:
            snap = job.snapshot()
            if snap.records_processed + snap.records_skipped != snap.records_total:
                logger.warning(
                    "job=%s record accounting mismatch processed=%d skipped=%d total=%d",
                    job.id,
                    snap.records_processed,
                    snap.records_skipped,
                    snap.records_total,
                )
        return error

    def on_retry(self, batch: Batch, attempt: int, cause: BaseException, delay: float) -> None:
        """BatchWriter retry hook: one warning event per retry."""
        self.events.warning(
            CATEGORY_DATABASE,
            f"Retrying batch {batch.number} (attempt {attempt + 1}/{self.writer.max_retries + 1})",
            detail=f"{cause}; backoff {delay:.2f}s",
            job_id=self.job.id,
        )
