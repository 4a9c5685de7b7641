from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum

"""Event model for the migration event stream.

An Event is one append-only entry consumed by the external log viewer. The
JSON Lines form keeps a fixed key set; the text form matches the viewer's
export format: ``[timestamp] [LEVEL] [category] message - detail``.
"""

__all__ = [
    "EventLevel",
    "Event",
    "CATEGORY_MIGRATION",
    "CATEGORY_DATABASE",
    "CATEGORY_FILE",
    "CATEGORY_TRANSFORM",
    "CATEGORY_SYSTEM",
]

CATEGORY_MIGRATION = "Migration"
CATEGORY_DATABASE = "Database"
CATEGORY_FILE = "File Processing"
CATEGORY_TRANSFORM = "Data Transform"
CATEGORY_SYSTEM = "System"


class EventLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


@dataclass(frozen=True)
class Event:
    """Structured event entry.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        level: info / warning / error / success
        category: Free-form grouping used by the viewer filter
        message: Human readable summary
        detail: Optional longer explanation
        job_id: Job the event belongs to (None for system events)
    """
    timestamp: str
    level: EventLevel
    category: str
    message: str
    detail: str | None = None
    job_id: str | None = None

    @staticmethod
    def create(
        level: EventLevel,
        category: str,
        message: str,
        detail: str | None = None,
        job_id: str | None = None,
    ) -> Event:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return Event(
            timestamp=ts,
            level=level,
            category=category,
            message=message,
            detail=detail,
            job_id=job_id,
        )

    def to_dict(self) -> dict[str, str | None]:
        data = asdict(self)
        data["level"] = self.level.value
        return data

    @staticmethod
    def from_dict(data: dict[str, str | None]) -> Event:
        return Event(
            timestamp=str(data["timestamp"]),
            level=EventLevel(data["level"]),
            category=str(data["category"]),
            message=str(data["message"]),
            detail=data.get("detail"),
            job_id=data.get("job_id"),
        )

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_text_line(self) -> str:
        line = f"[{self.timestamp}] [{self.level.value.upper()}] [{self.category}] {self.message}"
        if self.detail:
            line += f" - {self.detail}"
        return line
