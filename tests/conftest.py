# Shared pytest fixtures: in-memory DBF files, a fake PostgreSQL, configs
from __future__ import annotations

import struct
import tempfile
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Any

import psycopg2
import pytest

from dbf_migrator.config.loader import parse_config
from dbf_migrator.models.config_models import MigrationConfig
from dbf_migrator.transform.lookup import LookupRegistry, LookupTables

# (name, type, length, decimals)
IPD_FIELDS: list[tuple[str, str, int, int]] = [
    ("HN", "C", 7, 0),
    ("AN", "C", 9, 0),
    ("NAMEPAT", "C", 40, 0),
    ("PERSON_ID", "C", 13, 0),
    ("DATEADM", "D", 8, 0),
    ("DATEDSC", "D", 8, 0),
    ("SEX", "C", 1, 0),
    ("CHANGWAT", "C", 2, 0),
    ("AMPHUR", "C", 2, 0),
]

IPD_TRANSFORMS: list[dict[str, Any]] = [
    {"target": "hn", "operation": "passthrough", "source": "HN"},
    {"target": "an", "operation": "passthrough", "source": "AN", "nullable": False},
    {"target": "namepat", "operation": "hash", "source": "NAMEPAT"},
    {"target": "person_id", "operation": "hash", "source": "PERSON_ID"},
    {"target": "dateadm", "operation": "dateFormat", "source": "DATEADM"},
    {"target": "datedsc", "operation": "dateFormat", "source": "DATEDSC"},
    {"target": "sex", "operation": "lookup", "source": "SEX", "table": "sex"},
    {"target": "changwat", "operation": "lookup", "source": "CHANGWAT", "table": "changwat"},
    {"target": "amphur", "operation": "lookup", "sources": ["CHANGWAT", "AMPHUR"], "table": "amphur"},
    {
        "target": "byear",
        "operation": "calculated",
        "source": "DATEDSC",
        "function": "fiscal_year",
        "params": {"start_month": 10, "era_offset": 543},
    },
]

IPD_LOOKUPS = {
    "sex": {"1": "ชาย", "2": "หญิง"},
    "changwat": {"10": "กรุงเทพมหานคร", "50": "เชียงใหม่"},
    "amphur": {"1001": "พระนคร", "5001": "เมืองเชียงใหม่"},
}


# --- DBF builder ------------------------------------------------------------

def _encode_value(value: Any, ftype: str, length: int, decimals: int, encoding: str) -> bytes:
    if isinstance(value, bytes):
        return value.ljust(length, b" ")[:length]
    if value is None:
        return b" " * length
    if ftype == "C":
        return str(value).encode(encoding).ljust(length, b" ")[:length]
    if ftype in ("N", "F"):
        text = f"{value:.{decimals}f}" if isinstance(value, float) else str(value)
        return text.encode("ascii").rjust(length, b" ")[:length]
    if ftype == "D":
        text = value.strftime("%Y%m%d") if isinstance(value, date) else str(value)
        return text.encode("ascii").ljust(8, b" ")[:8]
    if ftype == "L":
        return (b"T" if value is True else b"F" if value is False else str(value).encode("ascii"))[:1]
    if ftype == "I":
        return struct.pack("<i", int(value))
    return str(value).encode("ascii").ljust(length, b" ")[:length]


def build_dbf(
    fields: Sequence[tuple[str, str, int, int]],
    records: Sequence[dict[str, Any]],
    *,
    deleted: Sequence[int] = (),
    flags: dict[int, bytes] | None = None,
    version: int = 0x03,
    language_driver: int = 0x7C,
    encoding: str = "cp874",
    record_count: int | None = None,
    eof_marker: bool = True,
) -> bytes:
    """dBASE III table bytes. `deleted` / `flags` index records from 0."""
    header_length = 32 + 32 * len(fields) + 1
    record_length = 1 + sum(f[2] for f in fields)
    count = len(records) if record_count is None else record_count

    header = bytearray(32)
    header[0] = version
    header[1:4] = bytes([124, 5, 17])  # 2024-05-17
    header[4:12] = struct.pack("<IHH", count, header_length, record_length)
    header[29] = language_driver

    descriptors = bytearray()
    for name, ftype, length, decimals in fields:
        desc = bytearray(32)
        desc[:len(name)] = name.encode("ascii")
        desc[11] = ord(ftype)
        desc[16] = length & 0xFF
        desc[17] = (length >> 8) if ftype == "C" else decimals
        descriptors += desc

    body = bytearray()
    for index, record in enumerate(records):
        flag = b"*" if index in deleted else b" "
        if flags and index in flags:
            flag = flags[index]
        body += flag
        for name, ftype, length, decimals in fields:
            body += _encode_value(record.get(name), ftype, length, decimals, encoding)

    data = bytes(header) + bytes(descriptors) + b"\r" + bytes(body)
    if eof_marker:
        data += b"\x1a"
    return data


def ipd_record(n: int, **overrides: Any) -> dict[str, Any]:
    record = {
        "HN": f"{n:07d}",
        "AN": f"67{n:07d}",
        "NAMEPAT": f"นาย ทดสอบ {n}",
        "PERSON_ID": f"{1100000000000 + n}",
        "DATEADM": "20240110",
        "DATEDSC": "20240115",
        "SEX": "1" if n % 2 else "2",
        "CHANGWAT": "50",
        "AMPHUR": "01",
    }
    record.update(overrides)
    return record


def write_ipd_dbf(path: Path, count: int, **kwargs: Any) -> Path:
    records = [ipd_record(i) for i in range(1, count + 1)]
    path.write_bytes(build_dbf(IPD_FIELDS, records, **kwargs))
    return path


# --- fake PostgreSQL ------------------------------------------------------------

class FakeDatabase:
    """Single in-memory table with per-connection pending rows.

    failures: exceptions raised by the next execute_values calls, in order
    reject: per-row predicate; a matching row raises IntegrityError
    key: unique key used by ON CONFLICT DO NOTHING
    """

    def __init__(self) -> None:
        self.committed: list[tuple] = []
        self.failures: list[BaseException] = []
        self.reject: Callable[[tuple], bool] | None = None
        self.key: Callable[[tuple], Any] | None = None
        self.statements: list[str] = []
        self.commits = 0
        self.rollbacks = 0
        self.connections_opened = 0
        self.before_commit: Callable[[], None] | None = None
        self._lock = threading.Lock()

    def execute(self, conn: FakeConnection, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        with self._lock:
            self.statements.append(sql)
            if self.failures:
                raise self.failures.pop(0)
            for row in rows:
                row = tuple(row)
                if self.reject is not None and self.reject(row):
                    raise psycopg2.IntegrityError(f"rejected row {row[:2]}")
                if "ON CONFLICT" in sql and self.key is not None:
                    existing = {self.key(r) for r in self.committed + conn.pending}
                    if self.key(row) in existing:
                        continue
                conn.pending.append(row)

    def commit(self, conn: FakeConnection) -> None:
        if self.before_commit is not None:
            self.before_commit()
        with self._lock:
            self.committed.extend(conn.pending)
            conn.pending.clear()
            self.commits += 1

    def rollback(self, conn: FakeConnection) -> None:
        with self._lock:
            conn.pending.clear()
            self.rollbacks += 1


class FakeCursor:
    def __init__(self, connection: FakeConnection) -> None:
        self.connection = connection
        self._result: list[tuple] = []

    def execute(self, sql: str, params: Any = None) -> None:
        self.connection.db.statements.append(sql)
        self._result = [("PostgreSQL 16.0 (fake)",)] if "version()" in sql else []

    def fetchone(self) -> tuple | None:
        return self._result[0] if self._result else None

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *exc: Any) -> None:
        return None


class FakeConnection:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self.pending: list[tuple] = []
        self.autocommit = True
        self.closed = 0

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.db.commit(self)

    def rollback(self) -> None:
        self.db.rollback(self)


class FakePool:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db

    @contextmanager
    def connection(self) -> Iterator[FakeConnection]:
        self.db.connections_opened += 1
        conn = FakeConnection(self.db)
        conn.autocommit = False
        yield conn

    def close(self) -> None:
        pass


def fake_execute_values(cursor: FakeCursor, sql: str, rows: Sequence[Sequence[Any]], page_size: int = 1000) -> None:
    cursor.connection.db.execute(cursor.connection, sql, rows)


# --- fixtures ----------------------------------------------------------------------

@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def fake_db(monkeypatch) -> FakeDatabase:
    import dbf_migrator.db.batch_insert as bi

    monkeypatch.setattr(bi, "execute_values", fake_execute_values)
    return FakeDatabase()


@pytest.fixture()
def fake_pool(fake_db: FakeDatabase) -> FakePool:
    return FakePool(fake_db)


@pytest.fixture()
def lookup_registry() -> LookupRegistry:
    return LookupRegistry(LookupTables(IPD_LOOKUPS))


def make_config(tmp: Path | None = None, **migration: Any) -> MigrationConfig:
    data: dict[str, Any] = {
        "database": {"table": "ipd_visit"},
        "migration": {"retry_backoff_seconds": 0, **migration},
        "transforms": IPD_TRANSFORMS,
    }
    if tmp is not None:
        data["logs"] = {"directory": str(tmp / "logs")}
    return parse_config(data)


@pytest.fixture()
def ipd_config(tmp_path: Path) -> MigrationConfig:
    return make_config(tmp_path)


@pytest.fixture()
def sample_config_yaml() -> str:
    return """database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
  table: ipd_visit
migration:
  batch_size: 2
  retry_backoff_seconds: 0
lookups:
  source: config/lookups
transforms:
  - target: an
    operation: passthrough
    source: AN
    nullable: false
  - target: namepat
    operation: hash
    source: NAMEPAT
  - target: dateadm
    operation: dateFormat
    source: DATEADM
  - target: sex
    operation: lookup
    source: SEX
    table: sex
logs:
  directory: ./logs
jobs:
  state_directory: ./logs/jobs
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "migrate.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    lookups = temp_workdir / "config" / "lookups"
    lookups.mkdir()
    (lookups / "sex.csv").write_text("code,name\n1,ชาย\n2,หญิง\n", encoding="utf-8")
    return cfg
