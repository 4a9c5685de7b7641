from __future__ import annotations

import codecs
import io
import logging
import struct
from collections.abc import Callable, Iterator
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import BinaryIO

from dbfread.codepages import guess_encoding

from ..models.dbf_record import DbfField, DbfHeader, FieldType, FieldValue, RawRecord

"""DBF (dBASE / FoxPro table) reader.

Layout handled here:
- 32 byte table header: version, last update (YY MM DD), record count (uint32),
  header length (uint16), record length (uint16), language driver id (byte 29)
- 32 byte field descriptors terminated by 0x0D (FoxPro headers carry a 263 byte
  backlink after the terminator, covered by header length)
- fixed-length records, first byte is the deletion flag (' ' live, '*' deleted)

The reader is a lazy, single-pass iterator. File-level inconsistencies raise
FormatError at open time; a single malformed record raises CorruptRecordError
from next() and the reader carries on with the following record.
"""

__all__ = [
    "FormatError",
    "CorruptRecordError",
    "DbfReader",
    "open_dbf",
    "read_header",
    "DEFAULT_ENCODING",
]

logger = logging.getLogger(__name__)

HEADER_SIZE = 32
DESCRIPTOR_SIZE = 32
FIELD_TERMINATOR = 0x0D
EOF_MARKER = 0x1A
LIVE_FLAG = 0x20
DELETED_FLAG = 0x2A

DEFAULT_ENCODING = "cp874"  # Thai Windows code page; legacy hospital files rarely set byte 29

KNOWN_VERSIONS = frozenset(
    {0x02, 0x03, 0x04, 0x05, 0x30, 0x31, 0x32, 0x43, 0x63, 0x83, 0x8B, 0x8E, 0xCB, 0xE5, 0xF5, 0xFB}
)

CODE_PAGE_UNSET = 0x00

_FIXED_LENGTHS = {FieldType.DATE: 8, FieldType.LOGICAL: 1, FieldType.INTEGER: 4}


class FormatError(Exception):
    """File-level header / descriptor inconsistency. Fatal for the job."""


class CorruptRecordError(Exception):
    """A single record could not be decoded. The record is skipped."""

    def __init__(self, record_number: int, reason: str) -> None:
        super().__init__(f"record {record_number}: {reason}")
        self.record_number = record_number
        self.reason = reason


def _parse_descriptor(desc: bytes, offset: int) -> DbfField:
    name = desc[:11].split(b"\x00", 1)[0].decode("latin-1").strip()
    if not name:
        raise FormatError(f"field descriptor at byte {offset} has an empty name")
    type_char = chr(desc[11])
    try:
        ftype = FieldType(type_char.upper())
    except ValueError:
        raise FormatError(f"field {name!r}: unsupported type {type_char!r}") from None
    length = desc[16]
    decimals = desc[17]
    if ftype is FieldType.CHARACTER:
        # Clipper / FoxPro store long character lengths across both bytes
        length = desc[16] | (desc[17] << 8)
        decimals = 0
    if length <= 0:
        raise FormatError(f"field {name!r}: zero length")
    expected = _FIXED_LENGTHS.get(ftype)
    if expected is not None and length != expected:
        raise FormatError(f"field {name!r}: type {ftype.value} must be {expected} bytes, got {length}")
    return DbfField(name=name, type=ftype, length=length, decimals=decimals)


def read_header(stream: BinaryIO) -> DbfHeader:
    """Parse and validate the table header from the start of `stream`."""
    raw = stream.read(HEADER_SIZE)
    if len(raw) < HEADER_SIZE:
        raise FormatError("file shorter than a DBF header")
    version = raw[0]
    if version not in KNOWN_VERSIONS:
        raise FormatError(f"not a DBF file (version byte 0x{version:02X})")
    record_count, header_length, record_length = struct.unpack("<IHH", raw[4:12])
    if header_length < HEADER_SIZE + 1:
        raise FormatError(f"header length {header_length} too small")

    try:
        last_update: date | None = date(1900 + raw[1], raw[2], raw[3])
    except ValueError:
        last_update = None

    rest = stream.read(header_length - HEADER_SIZE)
    if len(rest) < header_length - HEADER_SIZE:
        raise FormatError("file truncated inside the header")

    fields: list[DbfField] = []
    pos = 0
    offset = 1  # byte 0 of every record is the deletion flag
    while True:
        if pos >= len(rest):
            raise FormatError("field descriptor terminator 0x0D not found")
        if rest[pos] == FIELD_TERMINATOR:
            break
        desc = rest[pos:pos + DESCRIPTOR_SIZE]
        if len(desc) < DESCRIPTOR_SIZE:
            raise FormatError("field descriptor runs past header length")
        fld = _parse_descriptor(desc, HEADER_SIZE + pos)
        fields.append(
            DbfField(name=fld.name, type=fld.type, length=fld.length, decimals=fld.decimals, offset=offset)
        )
        offset += fld.length
        pos += DESCRIPTOR_SIZE

    if not fields:
        raise FormatError("no field descriptors")
    names = [f.name for f in fields]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise FormatError(f"duplicate field names: {dupes}")
    if offset != record_length:
        raise FormatError(
            f"record length {record_length} does not match field lengths + 1 = {offset}"
        )

    return DbfHeader(
        version=version,
        last_update=last_update,
        record_count=record_count,
        header_length=header_length,
        record_length=record_length,
        fields=tuple(fields),
        language_driver=raw[29],
    )


def _resolve_encoding(header: DbfHeader, encoding: str | None) -> str:
    if encoding is not None:
        try:
            return codecs.lookup(encoding).name
        except LookupError:
            raise FormatError(f"unknown encoding {encoding!r}") from None
    if header.language_driver == CODE_PAGE_UNSET:
        return DEFAULT_ENCODING
    try:
        return codecs.lookup(guess_encoding(header.language_driver)).name
    except LookupError:
        logger.warning(
            "no codec for language driver 0x%02X, using %s", header.language_driver, DEFAULT_ENCODING
        )
        return DEFAULT_ENCODING


# --- field decoders -------------------------------------------------------

def _decode_character(data: bytes, fld: DbfField, encoding: str) -> FieldValue:
    return FieldValue.string(data.rstrip(b" \x00").decode(encoding))


def _decode_numeric(data: bytes, fld: DbfField, encoding: str) -> FieldValue:
    text = data.decode("latin-1").strip(" \x00")
    if not text or set(text) == {"*"}:  # blank or overflow marker
        return FieldValue.null()
    try:
        value = Decimal(text)
    except InvalidOperation:
        return FieldValue.null(raw=text)
    if not value.is_finite():
        return FieldValue.null(raw=text)
    if fld.decimals == 0 and value == value.to_integral_value():
        return FieldValue.number(int(value))
    return FieldValue.number(value)


def _decode_integer(data: bytes, fld: DbfField, encoding: str) -> FieldValue:
    return FieldValue.number(struct.unpack("<i", data)[0])


def _decode_date(data: bytes, fld: DbfField, encoding: str) -> FieldValue:
    text = data.decode("latin-1").strip(" \x00")
    if not text or text == "00000000":
        return FieldValue.null()
    if len(text) != 8 or not text.isdigit():
        return FieldValue.null(raw=text)
    try:
        return FieldValue.of_date(date(int(text[:4]), int(text[4:6]), int(text[6:])))
    except ValueError:
        return FieldValue.null(raw=text)


def _decode_logical(data: bytes, fld: DbfField, encoding: str) -> FieldValue:
    ch = chr(data[0])
    if ch in "TtYy":
        return FieldValue.boolean(True)
    if ch in "FfNn":
        return FieldValue.boolean(False)
    return FieldValue.null()  # '?', blank, anything else


def _decode_memo(data: bytes, fld: DbfField, encoding: str) -> FieldValue:
    # memo contents live in a separate .dbt/.fpt file; only the block reference is kept
    if fld.length == 4:
        block = int.from_bytes(data, "little")
        return FieldValue.number(block) if block else FieldValue.null()
    text = data.decode("latin-1").strip(" \x00")
    if not text or text.strip("0") == "":
        return FieldValue.null()
    return FieldValue.string(text)


_DECODERS: dict[FieldType, Callable[[bytes, DbfField, str], FieldValue]] = {
    FieldType.CHARACTER: _decode_character,
    FieldType.NUMERIC: _decode_numeric,
    FieldType.FLOAT: _decode_numeric,
    FieldType.INTEGER: _decode_integer,
    FieldType.DATE: _decode_date,
    FieldType.LOGICAL: _decode_logical,
    FieldType.MEMO: _decode_memo,
}


class DbfReader:
    """Lazy single-pass iterator of RawRecord over a DBF byte stream.

    Parameters
    ----------
    stream: binary stream positioned at the start of the DBF data
    name: display name used in messages (upload file name)
    encoding: explicit codec for character fields (None = language driver byte)
    include_deleted: yield records flagged '*' instead of skipping them
    """

    def __init__(
        self,
        stream: BinaryIO,
        *,
        name: str = "<stream>",
        encoding: str | None = None,
        include_deleted: bool = False,
        close_stream: bool = False,
    ) -> None:
        if not stream.seekable():
            stream = io.BytesIO(stream.read())
        self._stream = stream
        self._close_stream = close_stream
        self.name = name
        self.include_deleted = include_deleted

        stream.seek(0, io.SEEK_END)
        file_size = stream.tell()
        stream.seek(0)
        self.header = read_header(stream)
        needed = self.header.header_length + self.header.data_length
        if needed > file_size:
            raise FormatError(
                f"{name}: header declares {self.header.record_count} records "
                f"({needed} bytes) but file has {file_size} bytes"
            )
        self.encoding = _resolve_encoding(self.header, encoding)
        stream.seek(self.header.header_length)

        self._position = 0  # records consumed so far
        self._exhausted = False
        self.deleted_count = 0
        self.corrupt_count = 0
        self.unread_count = 0  # declared records cut off by an early 0x1A marker
        logger.debug(
            "opened %s version=0x%02X records=%d fields=%d encoding=%s",
            name,
            self.header.version,
            self.header.record_count,
            len(self.header.fields),
            self.encoding,
        )

    @property
    def fields(self) -> tuple[DbfField, ...]:
        return self.header.fields

    @property
    def records_total(self) -> int:
        return self.header.record_count

    @property
    def position(self) -> int:
        return self._position

    def __iter__(self) -> Iterator[RawRecord]:
        return self

    def __next__(self) -> RawRecord:
        while True:
            if self._exhausted or self._position >= self.header.record_count:
                self._exhausted = True
                raise StopIteration
            data = self._stream.read(self.header.record_length)
            self._position += 1
            record_number = self._position

            if data and data[0] == EOF_MARKER:
                self.unread_count = self.header.record_count - record_number + 1
                self._exhausted = True
                logger.warning(
                    "%s: end marker at record %d, %d declared records missing",
                    self.name,
                    record_number,
                    self.unread_count,
                )
                raise StopIteration
            if len(data) < self.header.record_length:
                self._exhausted = True
                self.corrupt_count += 1
                raise CorruptRecordError(record_number, "short read")

            flag = data[0]
            if flag == DELETED_FLAG:
                if not self.include_deleted:
                    self.deleted_count += 1
                    continue
            elif flag != LIVE_FLAG:
                self.corrupt_count += 1
                raise CorruptRecordError(record_number, f"invalid deletion flag 0x{flag:02X}")

            return self._decode(record_number, data, deleted=flag == DELETED_FLAG)

    def _decode(self, record_number: int, data: bytes, *, deleted: bool) -> RawRecord:
        values: dict[str, FieldValue] = {}
        for fld in self.header.fields:
            chunk = data[fld.offset:fld.offset + fld.length]
            try:
                values[fld.name] = _DECODERS[fld.type](chunk, fld, self.encoding)
            except (UnicodeDecodeError, struct.error) as e:
                self.corrupt_count += 1
                raise CorruptRecordError(record_number, f"field {fld.name}: {e}") from e
        return RawRecord(record_number=record_number, values=values, deleted=deleted)

    def close(self) -> None:
        if self._close_stream:
            self._stream.close()

    def __enter__(self) -> DbfReader:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()


def open_dbf(
    path: Path, *, encoding: str | None = None, include_deleted: bool = False
) -> DbfReader:
    """Open a DBF file for reading.

    Raises FormatError when the file cannot be opened or its header is invalid.
    """
    try:
        stream = Path(path).open("rb")
    except OSError as e:
        raise FormatError(f"cannot open {path}: {e}") from e
    try:
        return DbfReader(
            stream,
            name=Path(path).name,
            encoding=encoding,
            include_deleted=include_deleted,
            close_stream=True,
        )
    except Exception:
        stream.close()
        raise
