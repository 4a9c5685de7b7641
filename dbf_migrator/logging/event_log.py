from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from ..models.event import Event, EventLevel
from .init import SUCCESS_LEVEL

"""Append-only event stream consumed by the external log viewer.

- emit() appends an Event and mirrors it to the application logger
- events() / query() hand out copies; consumers never mutate the stream
- subscribe() pushes every new event to a callback
- flush() appends not-yet-written events as JSON Lines to
  `<logs>/events-YYYYMMDD-HHMMSS.log` (UTC), path fixed on first flush
"""

__all__ = [
    "EventLog",
]

logger = logging.getLogger("dbf_migrator.events")

TIMESTAMP_FMT = "%Y%m%d-%H%M%S"

_LOG_LEVELS = {
    EventLevel.INFO: logging.INFO,
    EventLevel.WARNING: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
    EventLevel.SUCCESS: SUCCESS_LEVEL,
}

EventSubscriber = Callable[[Event], None]


class EventLog:
    def __init__(self, logs_dir: Path | str = "./logs", *, mirror_to_logger: bool = True) -> None:
        self._events: list[Event] = []
        self._subscribers: list[EventSubscriber] = []
        self._lock = threading.Lock()
        self._flushed = 0
        self._logs_dir = Path(logs_dir)
        self._file_path: Path | None = None
        self._mirror = mirror_to_logger

    @property
    def file_path(self) -> Path:
        if self._file_path is None:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(UTC).strftime(TIMESTAMP_FMT)
            self._file_path = self._logs_dir / f"events-{stamp}.log"
        return self._file_path

    def emit(
        self,
        level: EventLevel,
        category: str,
        message: str,
        detail: str | None = None,
        job_id: str | None = None,
    ) -> Event:
        event = Event.create(level, category, message, detail=detail, job_id=job_id)
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)
        if self._mirror:
            prefix = f"[{job_id}] " if job_id else ""
            suffix = f" - {detail}" if detail else ""
            logger.log(_LOG_LEVELS[level], "%s[%s] %s%s", prefix, category, message, suffix)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("event subscriber failed category=%s", category)
        return event

    def info(self, category: str, message: str, detail: str | None = None, job_id: str | None = None) -> Event:
        return self.emit(EventLevel.INFO, category, message, detail, job_id)

    def warning(self, category: str, message: str, detail: str | None = None, job_id: str | None = None) -> Event:
        return self.emit(EventLevel.WARNING, category, message, detail, job_id)

    def error(self, category: str, message: str, detail: str | None = None, job_id: str | None = None) -> Event:
        return self.emit(EventLevel.ERROR, category, message, detail, job_id)

    def success(self, category: str, message: str, detail: str | None = None, job_id: str | None = None) -> Event:
        return self.emit(EventLevel.SUCCESS, category, message, detail, job_id)

    def subscribe(self, callback: EventSubscriber) -> Callable[[], None]:
        """Register a push callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def events(self) -> tuple[Event, ...]:
        with self._lock:
            return tuple(self._events)

    def categories(self) -> list[str]:
        with self._lock:
            return sorted({e.category for e in self._events})

    def query(
        self,
        *,
        level: EventLevel | str | None = None,
        category: str | None = None,
        search: str | None = None,
        job_id: str | None = None,
    ) -> list[Event]:
        """Filter events, oldest first. `search` is case-insensitive over message and detail."""
        if isinstance(level, str):
            level = EventLevel(level)
        needle = search.casefold() if search else None
        result = []
        for e in self.events():
            if level is not None and e.level is not level:
                continue
            if category is not None and e.category != category:
                continue
            if job_id is not None and e.job_id != job_id:
                continue
            if needle and needle not in e.message.casefold() and needle not in (e.detail or "").casefold():
                continue
            result.append(e)
        return result

    def export_text(self, events: list[Event] | None = None) -> str:
        """Viewer download format, one event per line."""
        return "\n".join(e.to_text_line() for e in (events if events is not None else self.events()))

    def flush(self) -> Path:
        with self._lock:
            pending = self._events[self._flushed:]
            self._flushed = len(self._events)
        fp = self.file_path
        if pending:
            with fp.open("a", encoding="utf-8") as f:
                for e in pending:
                    f.write(e.to_json_line() + "\n")
        return fp
