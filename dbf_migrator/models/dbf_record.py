from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

"""DBF source-side domain models.

DbfHeader / DbfField describe the fixed layout parsed from the file header.
RawRecord carries one physical record as FieldValue variants so that every
transform rule deals with a closed set of source kinds instead of untyped
values.
"""

__all__ = [
    "FieldType",
    "ValueKind",
    "FieldValue",
    "DbfField",
    "DbfHeader",
    "RawRecord",
]


class FieldType(Enum):
    """Field type tags found in DBF field descriptors."""
    CHARACTER = "C"
    NUMERIC = "N"
    FLOAT = "F"
    DATE = "D"
    LOGICAL = "L"
    MEMO = "M"
    INTEGER = "I"  # FoxPro 4-byte binary integer


class ValueKind(Enum):
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOL = "bool"
    NULL = "null"


@dataclass(frozen=True)
class FieldValue:
    """Tagged value decoded from one DBF field.

    `raw` is only set for NULL values that came from non-blank but invalid
    content (e.g. date ``20240231``) so that transforms can warn about them.
    """
    kind: ValueKind
    value: str | Decimal | int | date | bool | None = None
    raw: str | None = None

    @staticmethod
    def string(value: str) -> FieldValue:
        return FieldValue(ValueKind.STRING, value)

    @staticmethod
    def number(value: Decimal | int) -> FieldValue:
        return FieldValue(ValueKind.NUMBER, value)

    @staticmethod
    def of_date(value: date) -> FieldValue:
        return FieldValue(ValueKind.DATE, value)

    @staticmethod
    def boolean(value: bool) -> FieldValue:
        return FieldValue(ValueKind.BOOL, value)

    @staticmethod
    def null(raw: str | None = None) -> FieldValue:
        return FieldValue(ValueKind.NULL, None, raw or None)

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.NULL


NULL = FieldValue.null()


@dataclass(frozen=True)
class DbfField:
    """One field descriptor from the DBF header."""
    name: str  # trimmed, NUL padding removed
    type: FieldType
    length: int
    decimals: int = 0
    offset: int = 0  # byte offset inside the record (deletion flag is offset 0)


@dataclass(frozen=True)
class DbfHeader:
    """Parsed DBF table header.

    Invariant (checked by the reader): sum of field lengths + 1 == record_length.
    """
    version: int
    last_update: date | None
    record_count: int
    header_length: int
    record_length: int
    fields: tuple[DbfField, ...]
    language_driver: int = 0

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def data_length(self) -> int:
        """Bytes the header says the record area occupies."""
        return self.record_length * self.record_count


@dataclass(frozen=True)
class RawRecord:
    """Single physical DBF record decoded into FieldValue variants."""
    record_number: int  # 1-based physical position in the file
    values: dict[str, FieldValue] = field(default_factory=dict)
    deleted: bool = False

    def get(self, name: str) -> FieldValue:
        return self.values.get(name, NULL)

    def plain(self) -> dict[str, Any]:
        """Plain python values (debug / inspect output)."""
        return {k: v.value for k, v in self.values.items()}
