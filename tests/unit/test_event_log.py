from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from dbf_migrator.logging.event_log import EventLog
from dbf_migrator.models.event import (
    CATEGORY_DATABASE,
    CATEGORY_FILE,
    CATEGORY_MIGRATION,
    CATEGORY_TRANSFORM,
    Event,
    EventLevel,
)


def _log(tmp_path: Path) -> EventLog:
    return EventLog(tmp_path / "logs", mirror_to_logger=False)


def test_emit_appends_in_order(tmp_path: Path):
    log = _log(tmp_path)
    log.info(CATEGORY_FILE, "File uploaded: ipd.dbf", detail="12.0 KB", job_id="job-001")
    log.success(CATEGORY_MIGRATION, "Migration completed: ipd.dbf", job_id="job-001")

    events = log.events()
    assert len(log) == 2
    assert [e.level for e in events] == [EventLevel.INFO, EventLevel.SUCCESS]
    assert events[0].detail == "12.0 KB"
    assert events[0].timestamp.endswith("Z")


def test_events_returns_snapshot(tmp_path: Path):
    log = _log(tmp_path)
    log.info(CATEGORY_FILE, "one")
    snapshot = log.events()
    log.info(CATEGORY_FILE, "two")
    assert len(snapshot) == 1


def test_query_filters(tmp_path: Path):
    log = _log(tmp_path)
    log.info(CATEGORY_FILE, "File uploaded: a.dbf", job_id="job-001")
    log.warning(CATEGORY_TRANSFORM, "Record 2: dateadm: invalid date", detail="'20240231'", job_id="job-001")
    log.warning(CATEGORY_DATABASE, "Retrying batch 1", job_id="job-002")
    log.error(CATEGORY_MIGRATION, "Migration failed: b.dbf", job_id="job-002")

    assert [e.message for e in log.query(level="warning")] == ["Record 2: dateadm: invalid date", "Retrying batch 1"]
    assert len(log.query(level=EventLevel.ERROR)) == 1
    assert len(log.query(category=CATEGORY_DATABASE)) == 1
    assert len(log.query(job_id="job-001")) == 2
    assert [e.message for e in log.query(search="20240231")] == ["Record 2: dateadm: invalid date"]
    assert len(log.query(search="MIGRATION FAILED")) == 1
    assert log.query(level="warning", job_id="job-002")[0].category == CATEGORY_DATABASE


def test_categories(tmp_path: Path):
    log = _log(tmp_path)
    log.info(CATEGORY_MIGRATION, "a")
    log.info(CATEGORY_FILE, "b")
    log.info(CATEGORY_MIGRATION, "c")
    assert log.categories() == [CATEGORY_FILE, CATEGORY_MIGRATION]


def test_subscribe_and_unsubscribe(tmp_path: Path):
    log = _log(tmp_path)
    received: list[Event] = []
    unsubscribe = log.subscribe(received.append)
    log.info(CATEGORY_FILE, "first")
    unsubscribe()
    log.info(CATEGORY_FILE, "second")
    assert [e.message for e in received] == ["first"]


def test_failing_subscriber_does_not_break_emit(tmp_path: Path, caplog):
    log = _log(tmp_path)
    received: list[Event] = []

    def disconnected(event: Event) -> None:
        raise RuntimeError("log viewer disconnected")

    log.subscribe(disconnected)
    log.subscribe(received.append)
    logger = logging.getLogger("dbf_migrator.events")
    logger.addHandler(caplog.handler)
    try:
        event = log.info(CATEGORY_MIGRATION, "Migration started: ipd.dbf")
    finally:
        logger.removeHandler(caplog.handler)

    assert event.message == "Migration started: ipd.dbf"
    assert received == [event]
    assert log.events() == [event]
    assert "event subscriber failed" in caplog.text


def test_flush_writes_json_lines_once(tmp_path: Path):
    log = _log(tmp_path)
    log.info(CATEGORY_FILE, "a")
    path = log.flush()
    log.warning(CATEGORY_TRANSFORM, "b", detail="ค่าว่าง")
    assert log.flush() == path

    lines = path.read_text(encoding="utf-8").splitlines()
    assert path.name.startswith("events-") and path.suffix == ".log"
    assert [json.loads(line)["message"] for line in lines] == ["a", "b"]
    assert json.loads(lines[1])["detail"] == "ค่าว่าง"


def test_export_text(tmp_path: Path):
    log = _log(tmp_path)
    log.warning(CATEGORY_TRANSFORM, "Found 15 records with missing AMPHUR data", detail="set to null")
    text = log.export_text()
    assert text.endswith("[WARNING] [Data Transform] Found 15 records with missing AMPHUR data - set to null")
    assert text.startswith("[")


def test_mirrors_to_logger(tmp_path: Path, caplog):
    log = EventLog(tmp_path / "logs")
    logger = logging.getLogger("dbf_migrator.events")
    # the application logger does not propagate to root, so attach caplog directly
    logger.addHandler(caplog.handler)
    try:
        with caplog.at_level(logging.INFO, logger="dbf_migrator.events"):
            log.error(CATEGORY_DATABASE, "Connection failed", detail="timeout", job_id="job-003")
    finally:
        logger.removeHandler(caplog.handler)
    assert "[job-003] [Database] Connection failed - timeout" in caplog.text


def test_concurrent_emit(tmp_path: Path):
    log = _log(tmp_path)

    def worker(n: int) -> None:
        for i in range(200):
            log.info(CATEGORY_FILE, f"{n}-{i}")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(log) == 800
