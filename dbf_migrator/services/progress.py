from __future__ import annotations

import sys
import threading
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

from ..models.job import JobSnapshot, JobStatus

"""Progress display with tqdm (TTY only).

One bar for the whole run, counted in records (committed + skipped) across
every job. It is fed job snapshots from MigrationOrchestrator.subscribe(),
which fire from several job threads, so updates are serialized here.
In non-TTY environments (CI, redirected output) nothing is drawn.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    """True if stdout is a TTY and progress should be displayed."""
    return sys.stdout.isatty()


class ProgressTracker:
    def __init__(self, *, description: str = "Migrating") -> None:
        self.description = description
        self._done: dict[str, int] = {}
        self._totals: dict[str, int] = {}
        self._finished: dict[str, JobStatus] = {}
        self._lock = threading.Lock()

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=0,
                desc=description,
                unit="rec",
                disable=False,
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._totals.values())

    @property
    def completed(self) -> int:
        with self._lock:
            return sum(self._done.values())

    def update(self, snap: JobSnapshot) -> None:
        """Subscriber callback for job snapshots."""
        with self._lock:
            done = snap.records_processed + snap.records_skipped
            # a retry resets the job's counters; the bar follows them back
            delta = done - self._done.get(snap.id, 0)
            self._done[snap.id] = done
            total_changed = self._totals.get(snap.id) != snap.records_total
            self._totals[snap.id] = snap.records_total
            if snap.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                self._finished[snap.id] = snap.status
            else:
                self._finished.pop(snap.id, None)

            if self.pbar is None:
                return
            if total_changed:
                self.pbar.total = sum(self._totals.values())
            if delta:
                self.pbar.update(delta)
            self.pbar.set_postfix(
                completed=sum(1 for s in self._finished.values() if s is JobStatus.COMPLETED),
                failed=sum(1 for s in self._finished.values() if s is JobStatus.FAILED),
            )

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
