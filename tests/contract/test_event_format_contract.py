from __future__ import annotations

import json
import re
from pathlib import Path

from dbf_migrator.logging.event_log import EventLog
from dbf_migrator.models.event import CATEGORY_MIGRATION, CATEGORY_TRANSFORM, Event, EventLevel

"""Event stream contract for the log viewer.

JSON Lines: one object per line with exactly the keys below.
Text export: [timestamp] [LEVEL] [category] message - detail
"""

EVENT_KEYS = {"timestamp", "level", "category", "message", "detail", "job_id"}
TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$")
TEXT_LINE = re.compile(r"^\[(?P<ts>[^\]]+)\] \[(?P<level>INFO|WARNING|ERROR|SUCCESS)\] \[(?P<category>[^\]]+)\] (?P<rest>.+)$")


def test_json_line_keys_and_values():
    event = Event.create(EventLevel.WARNING, CATEGORY_TRANSFORM, "Record 2: dateadm: invalid date '20240231'", job_id="job-001")
    data = json.loads(event.to_json_line())

    assert set(data) == EVENT_KEYS
    assert data["level"] == "warning"
    assert data["detail"] is None
    assert TIMESTAMP.match(data["timestamp"])
    assert Event.from_dict(data) == event


def test_text_line_format():
    event = Event.create(EventLevel.SUCCESS, CATEGORY_MIGRATION, "Migration completed: ipd.dbf", detail="1000 records")
    match = TEXT_LINE.match(event.to_text_line())

    assert match
    assert match["level"] == "SUCCESS"
    assert match["category"] == "Migration"
    assert match["rest"] == "Migration completed: ipd.dbf - 1000 records"


def test_text_line_without_detail():
    event = Event.create(EventLevel.INFO, CATEGORY_MIGRATION, "Migration started: ipd.dbf")
    assert event.to_text_line().endswith("[INFO] [Migration] Migration started: ipd.dbf")


def test_flushed_file_is_json_lines(tmp_path: Path):
    log = EventLog(tmp_path, mirror_to_logger=False)
    log.info(CATEGORY_MIGRATION, "a", job_id="job-001")
    log.error(CATEGORY_MIGRATION, "b", detail="เชื่อมต่อไม่ได้")
    path = log.flush()

    for line in path.read_text(encoding="utf-8").splitlines():
        assert set(json.loads(line)) == EVENT_KEYS
    # non-ASCII text is written as-is
    assert "เชื่อมต่อไม่ได้" in path.read_text(encoding="utf-8")
