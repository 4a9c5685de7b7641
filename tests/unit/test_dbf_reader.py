from __future__ import annotations

import io
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import IPD_FIELDS, build_dbf, ipd_record
from dbf_migrator.dbf.reader import CorruptRecordError, DbfReader, FormatError, open_dbf, read_header
from dbf_migrator.models.dbf_record import FieldType, ValueKind


def _reader(data: bytes, **kwargs) -> DbfReader:
    return DbfReader(io.BytesIO(data), name="test.dbf", **kwargs)


def test_read_header_fields_and_offsets():
    data = build_dbf(IPD_FIELDS, [ipd_record(1)])
    header = read_header(io.BytesIO(data))

    assert header.version == 0x03
    assert header.record_count == 1
    assert header.last_update == date(2024, 5, 17)
    assert header.field_names == [f[0] for f in IPD_FIELDS]
    assert header.fields[0].offset == 1
    assert header.fields[1].offset == 1 + 7
    assert header.fields[4].type is FieldType.DATE
    assert header.record_length == 1 + sum(f[2] for f in IPD_FIELDS)


def test_yields_typed_values_in_order():
    fields = [("NAME", "C", 10, 0), ("AGE", "N", 3, 0), ("WEIGHT", "N", 6, 2), ("ADM", "D", 8, 0), ("ALIVE", "L", 1, 0)]
    records = [
        {"NAME": "Somchai", "AGE": 42, "WEIGHT": 61.5, "ADM": "20240110", "ALIVE": True},
        {"NAME": "", "AGE": None, "WEIGHT": None, "ADM": "", "ALIVE": "?"},
    ]
    with _reader(build_dbf(fields, records)) as reader:
        rows = list(reader)

    assert [r.record_number for r in rows] == [1, 2]
    first = rows[0].values
    assert first["NAME"].kind is ValueKind.STRING and first["NAME"].value == "Somchai"
    assert first["AGE"].value == 42 and isinstance(first["AGE"].value, int)
    assert first["WEIGHT"].value == Decimal("61.50")
    assert first["ADM"].value == date(2024, 1, 10)
    assert first["ALIVE"].value is True

    second = rows[1].values
    assert second["NAME"].value == ""
    assert second["AGE"].is_null and second["AGE"].raw is None
    assert second["ADM"].is_null
    assert second["ALIVE"].is_null


def test_thai_text_decoded_with_language_driver_code_page():
    data = build_dbf(IPD_FIELDS, [ipd_record(1, NAMEPAT="นางสาว ใจดี")], language_driver=0x7C)
    with _reader(data) as reader:
        assert reader.encoding == "cp874"
        record = next(reader)
    assert record.get("NAMEPAT").value == "นางสาว ใจดี"


def test_unknown_language_driver_falls_back_to_thai_code_page():
    data = build_dbf(IPD_FIELDS, [ipd_record(1)], language_driver=0x00)
    with _reader(data) as reader:
        assert reader.encoding == "cp874"


def test_unmapped_language_driver_falls_back_to_thai_code_page():
    data = build_dbf(IPD_FIELDS, [ipd_record(1)], language_driver=0xFF)
    with _reader(data) as reader:
        assert reader.encoding == "cp874"


def test_language_driver_code_page_used():
    fields = [("NAME", "C", 10, 0)]
    data = build_dbf(fields, [{"NAME": "café"}], language_driver=0x03, encoding="cp1252")
    with _reader(data) as reader:
        assert reader.encoding == "cp1252"
        assert next(reader).get("NAME").value == "café"


def test_explicit_encoding_overrides_language_driver():
    fields = [("NAME", "C", 10, 0)]
    data = build_dbf(fields, [{"NAME": "café"}], language_driver=0x7C, encoding="cp1252")
    with _reader(data, encoding="cp1252") as reader:
        assert next(reader).get("NAME").value == "café"


def test_invalid_date_keeps_raw_text():
    data = build_dbf(IPD_FIELDS, [ipd_record(1, DATEADM="20240231")])
    with _reader(data) as reader:
        value = next(reader).get("DATEADM")
    assert value.is_null
    assert value.raw == "20240231"


def test_deleted_records_skipped_and_counted():
    records = [ipd_record(i) for i in range(1, 6)]
    with _reader(build_dbf(IPD_FIELDS, records, deleted=[1, 3])) as reader:
        rows = list(reader)
        assert reader.deleted_count == 2
    assert [r.record_number for r in rows] == [1, 3, 5]


def test_include_deleted_yields_flagged_records():
    records = [ipd_record(i) for i in range(1, 4)]
    with _reader(build_dbf(IPD_FIELDS, records, deleted=[1]), include_deleted=True) as reader:
        rows = list(reader)
    assert [r.deleted for r in rows] == [False, True, False]
    assert reader.deleted_count == 0


def test_corrupt_flag_raises_and_reader_continues():
    records = [ipd_record(i) for i in range(1, 4)]
    reader = _reader(build_dbf(IPD_FIELDS, records, flags={1: b"#"}))

    assert next(reader).record_number == 1
    with pytest.raises(CorruptRecordError) as exc:
        next(reader)
    assert exc.value.record_number == 2
    assert next(reader).record_number == 3
    assert reader.corrupt_count == 1


def test_zero_records():
    with _reader(build_dbf(IPD_FIELDS, [])) as reader:
        assert reader.records_total == 0
        assert list(reader) == []


def test_early_end_marker_counts_unread_records():
    records = [ipd_record(i) for i in range(1, 4)]
    data = bytearray(build_dbf(IPD_FIELDS, records, eof_marker=False))
    record_length = 1 + sum(f[2] for f in IPD_FIELDS)
    header_length = 32 + 32 * len(IPD_FIELDS) + 1
    data[header_length + 2 * record_length] = 0x1A  # third record starts with the marker

    with _reader(bytes(data)) as reader:
        rows = list(reader)
    assert len(rows) == 2
    assert reader.unread_count == 1


def test_record_length_mismatch_is_format_error():
    data = bytearray(build_dbf(IPD_FIELDS, [ipd_record(1)]))
    data[10] += 1  # record length low byte
    with pytest.raises(FormatError, match="record length"):
        _reader(bytes(data))


def test_truncated_file_is_format_error():
    data = build_dbf(IPD_FIELDS, [ipd_record(i) for i in range(1, 4)], eof_marker=False)
    with pytest.raises(FormatError, match="declares 3 records"):
        _reader(data[:-20])


def test_not_a_dbf_file():
    with pytest.raises(FormatError, match="version byte"):
        _reader(b"PK\x03\x04" + b"\x00" * 60)


def test_missing_terminator_is_format_error():
    data = bytearray(build_dbf([("A", "C", 1, 0)], []))
    data[64] = 0x00  # terminator position for one field
    with pytest.raises(FormatError):
        _reader(bytes(data))


def test_wrong_fixed_length_is_format_error():
    with pytest.raises(FormatError, match="must be 8 bytes"):
        _reader(build_dbf([("ADM", "D", 6, 0)], []))


def test_non_seekable_stream_is_buffered():
    data = build_dbf(IPD_FIELDS, [ipd_record(1)])

    class Pipe(io.RawIOBase):
        def __init__(self) -> None:
            self._buf = io.BytesIO(data)

        def readable(self) -> bool:
            return True

        def seekable(self) -> bool:
            return False

        def readinto(self, b) -> int:
            chunk = self._buf.read(len(b))
            b[:len(chunk)] = chunk
            return len(chunk)

    with DbfReader(io.BufferedReader(Pipe()), name="pipe.dbf") as reader:
        assert len(list(reader)) == 1


def test_open_dbf_missing_file(tmp_path: Path):
    with pytest.raises(FormatError, match="cannot open"):
        open_dbf(tmp_path / "missing.dbf")


def test_open_dbf_reads_file(tmp_path: Path):
    path = tmp_path / "ipd.dbf"
    path.write_bytes(build_dbf(IPD_FIELDS, [ipd_record(1), ipd_record(2)]))
    with open_dbf(path) as reader:
        assert reader.name == "ipd.dbf"
        assert [r.get("HN").value for r in reader] == ["0000001", "0000002"]
