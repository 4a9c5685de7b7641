from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import psycopg2
from psycopg2.extras import execute_values

from ..models.transformed_row import Batch, CommitResult

"""Batch INSERT and the transactional batch writer.

batch_insert() issues one INSERT ... VALUES %s through
psycopg2.extras.execute_values on a caller-provided cursor.

BatchWriter commits one Batch per transaction on a pooled connection:
- transient failures (connection reset, timeout, serialization conflict) are
  retried with exponential backoff up to max_retries
- anything else fails at once; the batch is then replayed row by row in a
  rolled-back transaction to report the offending row
"""

__all__ = [
    "BatchInsertError",
    "BatchMetrics",
    "InsertResult",
    "WriteError",
    "BatchWriter",
    "batch_insert",
    "is_transient",
    "quote_table",
]

logger = logging.getLogger(__name__)

# SQLSTATE classes worth retrying: connection exception, transaction rollback
# (serialization / deadlock), insufficient resources, operator intervention
TRANSIENT_SQLSTATE_PREFIXES = ("08", "40", "53", "57P")
TRANSIENT_SQLSTATES = frozenset({"57014"})  # query_canceled (statement_timeout)

_NON_TRANSIENT = (
    psycopg2.IntegrityError,
    psycopg2.DataError,
    psycopg2.ProgrammingError,
    psycopg2.NotSupportedError,
)


class BatchInsertError(Exception):
    pass


class WriteError(Exception):
    """Batch could not be committed.

    transient=True means the retry budget ran out on a retryable failure.
    row_position is the 0-based index inside the batch of the row that was
    rejected (non-transient failures only, when it could be located).
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        batch_number: int,
        attempts: int,
        row_position: int | None = None,
        record_number: int | None = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.batch_number = batch_number
        self.attempts = attempts
        self.row_position = row_position
        self.record_number = record_number


@dataclass(frozen=True)
class BatchMetrics:
    """Metrics data for a single execute_values call."""
    batch_size: int  # Number of rows in this batch
    elapsed_seconds: float  # Time spent on execute_values call
    start_time: float  # Start timestamp (time.time())
    end_time: float  # End timestamp (time.time())


@dataclass(frozen=True)
class InsertResult:
    inserted_rows: int


def quote_table(table: str) -> str:
    return ".".join(f'"{part}"' for part in table.split("."))


def batch_insert(
    cursor: Any,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    page_size: int = 1000,
    conflict_columns: Sequence[str] | None = None,
    metrics_callback: Callable[[BatchMetrics], None] | None = None,
) -> InsertResult:
    """Perform batched INSERT using psycopg2.extras.execute_values.

    Parameters
    ----------
    cursor: psycopg2 cursor (transaction is managed by the caller)
    table: target table, optionally schema-qualified
    columns: insert columns in row order
    rows: row value sequences
    page_size: execute_values page size (statements per round trip)
    conflict_columns: when given, rows hitting that unique key are skipped
        (ON CONFLICT (...) DO NOTHING) so re-running a file does not duplicate
    metrics_callback: receives BatchMetrics; not invoked for empty `rows`
    """
    rows_list = list(rows)
    if not rows_list:
        return InsertResult(inserted_rows=0)

    cols_sql = ",".join(f'"{c}"' for c in columns)
    base_sql = f"INSERT INTO {quote_table(table)} ({cols_sql}) VALUES %s"
    if conflict_columns:
        conflict_sql = ",".join(f'"{c}"' for c in conflict_columns)
        base_sql += f" ON CONFLICT ({conflict_sql}) DO NOTHING"

    start_time = time.time()
    try:
        execute_values(cursor, base_sql, rows_list, page_size=page_size)
    except Exception as e:
        raise BatchInsertError(str(e)) from e
    finally:
        end_time = time.time()
        if metrics_callback is not None:
            metrics_callback(
                BatchMetrics(
                    batch_size=len(rows_list),
                    elapsed_seconds=end_time - start_time,
                    start_time=start_time,
                    end_time=end_time,
                )
            )

    return InsertResult(inserted_rows=len(rows_list))


def is_transient(exc: BaseException) -> bool:
    """True when retrying the same batch may succeed."""
    cause = exc.__cause__ if isinstance(exc, BatchInsertError) and exc.__cause__ else exc
    if isinstance(cause, _NON_TRANSIENT):
        return False
    code = getattr(cause, "pgcode", None)
    if code:
        return code.startswith(TRANSIENT_SQLSTATE_PREFIXES) or code in TRANSIENT_SQLSTATES
    return isinstance(cause, (psycopg2.OperationalError, psycopg2.InterfaceError))


class ConnectionProvider(Protocol):
    def connection(self) -> Any: ...  # context manager yielding a DB-API connection


def _rollback_quietly(conn: Any) -> None:
    try:
        conn.rollback()
    except psycopg2.Error as e:
        # connection is already broken; the pool discards it on release
        logger.debug("rollback failed: %s", e)


class BatchWriter:
    """Commits batches to one destination table, one transaction per batch."""

    def __init__(
        self,
        pool: ConnectionProvider,
        table: str,
        columns: Sequence[str],
        *,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        page_size: int = 1000,
        conflict_columns: Sequence[str] | None = None,
        on_retry: Callable[[Batch, int, BaseException, float], None] | None = None,
        metrics_callback: Callable[[BatchMetrics], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._pool = pool
        self.table = table
        self.columns = list(columns)
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.page_size = page_size
        self.conflict_columns = list(conflict_columns or [])
        self.on_retry = on_retry
        self._metrics_callback = metrics_callback
        self._sleep = sleep

    def _insert(self, cursor: Any, rows: Sequence[Sequence[Any]], *, metrics: bool = True) -> None:
        batch_insert(
            cursor,
            self.table,
            self.columns,
            rows,
            page_size=self.page_size,
            conflict_columns=self.conflict_columns,
            metrics_callback=self._metrics_callback if metrics else None,
        )

    def _commit(self, rows: Sequence[Sequence[Any]]) -> None:
        # connection held only for this one transaction
        with self._pool.connection() as conn:
            try:
                with conn.cursor() as cur:
                    self._insert(cur, rows)
                conn.commit()
            except Exception:
                _rollback_quietly(conn)
                raise

    def locate_offending_row(self, rows: Sequence[Sequence[Any]]) -> int | None:
        """Replay rows one by one in a transaction that is always rolled back.

        Returns the index of the first row the database rejects, None if the
        replay goes through (e.g. a failure only raised at COMMIT).
        """
        if len(rows) == 1:
            return 0
        try:
            with self._pool.connection() as conn:
                try:
                    with conn.cursor() as cur:
                        for index, row in enumerate(rows):
                            try:
                                self._insert(cur, [row], metrics=False)
                            except BatchInsertError:
                                return index
                    return None
                finally:
                    _rollback_quietly(conn)
        except psycopg2.Error as e:
            logger.warning("could not locate offending row: %s", e)
            return None

    def write(self, batch: Batch) -> CommitResult:
        """Commit `batch` atomically.

        Raises:
            WriteError: non-transient failure, or retries exhausted
        """
        rows = [r.as_tuple(self.columns) for r in batch.rows]
        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                self._commit(rows)
            except Exception as e:
                cause = e.__cause__ if isinstance(e, BatchInsertError) and e.__cause__ else e
                if not is_transient(e):
                    position = self.locate_offending_row(rows)
                    record_number = batch.rows[position].record_number if position is not None else None
                    where = (
                        f" at batch row {position} (record {record_number})"
                        if position is not None
                        else ""
                    )
                    raise WriteError(
                        f"batch {batch.number} rejected{where}: {cause}",
                        transient=False,
                        batch_number=batch.number,
                        attempts=attempt,
                        row_position=position,
                        record_number=record_number,
                    ) from e
                if attempt > self.max_retries:
                    raise WriteError(
                        f"batch {batch.number} failed after {attempt} attempts: {cause}",
                        transient=True,
                        batch_number=batch.number,
                        attempts=attempt,
                    ) from e
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "batch %d attempt %d/%d failed (%s), retrying in %.2fs",
                    batch.number,
                    attempt,
                    self.max_retries + 1,
                    cause,
                    delay,
                )
                if self.on_retry is not None:
                    self.on_retry(batch, attempt, cause, delay)
                self._sleep(delay)
                continue

            return CommitResult(
                batch_number=batch.number,
                rows=len(rows),
                attempts=attempt,
                elapsed_seconds=time.monotonic() - started,
                first_record=batch.first_record,
                last_record=batch.last_record,
            )
