from __future__ import annotations

import statistics
import threading
from dataclasses import dataclass
from datetime import datetime

"""Aggregated results of a migration run.

JobStat carries per-job figures (rows, batch timing); RunSummary aggregates
them for the SUMMARY line; DashboardStats is the live view over all jobs.
"""

__all__ = [
    "BatchStatsAccumulator",
    "DashboardStats",
    "JobStat",
    "RunSummary",
]


@dataclass(frozen=True)
class JobStat:
    """Per-job statistics at the end of a run."""
    job_id: str
    file_name: str
    status: str  # completed/failed
    processed_records: int
    skipped_records: int
    elapsed_seconds: float
    total_batches: int = 0
    avg_batch_seconds: float = 0.0
    p95_batch_seconds: float = 0.0  # performance monitoring


@dataclass(frozen=True)
class RunSummary:
    """Totals for one CLI run, rendered as the SUMMARY line."""
    completed_jobs: int
    failed_jobs: int
    total_records: int  # committed
    skipped_records: int
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    throughput_rows_per_sec: float
    job_stats: list[JobStat] | None = None

    @classmethod
    def from_stats(cls, stats: list[JobStat], start_time: datetime, end_time: datetime) -> RunSummary:
        elapsed = max((end_time - start_time).total_seconds(), 0.0)
        total = sum(s.processed_records for s in stats)
        return cls(
            completed_jobs=sum(1 for s in stats if s.status == "completed"),
            failed_jobs=sum(1 for s in stats if s.status != "completed"),
            total_records=total,
            skipped_records=sum(s.skipped_records for s in stats),
            start_time=start_time,
            end_time=end_time,
            elapsed_seconds=round(elapsed, 3),
            throughput_rows_per_sec=round(total / elapsed, 1) if elapsed > 0 else 0.0,
            job_stats=stats,
        )


@dataclass(frozen=True)
class DashboardStats:
    active_jobs: int  # running
    total_records: int  # committed across all jobs
    success_rate: float  # completed / finished, percent; 0.0 before any job finished


class BatchStatsAccumulator:
    """Collects batch commit timings for one job.

    Fed from the writer's metrics callback, which may fire from several
    commit threads when strict ordering is off.
    """

    def __init__(self) -> None:
        self.batch_times: list[float] = []
        self._lock = threading.Lock()

    def add_batch_time(self, elapsed_seconds: float) -> None:
        with self._lock:
            self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Returns (total_batches, avg_batch_seconds, p95_batch_seconds)."""
        with self._lock:
            times = list(self.batch_times)
        if not times:
            return (0, 0.0, 0.0)

        total_batches = len(times)
        avg_batch_seconds = statistics.mean(times)
        if total_batches == 1:
            p95_batch_seconds = times[0]
        else:
            p95_batch_seconds = statistics.quantiles(times, n=20, method="inclusive")[18]
        return (total_batches, avg_batch_seconds, p95_batch_seconds)
