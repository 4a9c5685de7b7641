from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path

from ..models.job import JobSnapshot

"""Job snapshot persistence.

One JSON document per job (`<state_dir>/<job_id>.json`), rewritten through a
temporary file + os.replace so a crash never leaves half a document behind.
"""

__all__ = [
    "JobStore",
    "JsonJobStore",
    "MemoryJobStore",
]

logger = logging.getLogger(__name__)


class JobStore:
    def save(self, snapshot: JobSnapshot) -> None:
        raise NotImplementedError

    def load_all(self) -> list[JobSnapshot]:
        raise NotImplementedError


class MemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._data: dict[str, dict] = {}
        self._lock = threading.Lock()

    def save(self, snapshot: JobSnapshot) -> None:
        with self._lock:
            self._data[snapshot.id] = snapshot.to_dict()

    def load_all(self) -> list[JobSnapshot]:
        with self._lock:
            return [JobSnapshot.from_dict(d) for d in self._data.values()]


class JsonJobStore(JobStore):
    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, job_id: str) -> Path:
        return self.directory / f"{job_id}.json"

    def save(self, snapshot: JobSnapshot) -> None:
        target = self._path(snapshot.id)
        tmp = target.with_suffix(".json.tmp")
        payload = json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2)
        with self._lock:
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, target)

    def load_all(self) -> list[JobSnapshot]:
        snapshots = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                snapshots.append(JobSnapshot.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (ValueError, KeyError) as e:
                logger.warning("ignoring unreadable job state %s: %s", path, e)
        return snapshots
