from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Mapping, Sequence
from datetime import date
from decimal import Decimal
from typing import Any

from ..models.dbf_record import FieldValue, ValueKind
from .lookup import LookupTables

"""Built-in transform operations.

Each operation is a pure function of source FieldValues (plus lookup tables)
returning ``(value, warning)``. A warning is a non-fatal note: the value is
None and the pipeline keeps going.
"""

__all__ = [
    "RuleOutcome",
    "hash_value",
    "format_date",
    "lookup_code",
    "passthrough",
    "CALCULATIONS",
    "fiscal_year",
    "length_of_stay",
    "coerce_date",
]

RuleOutcome = tuple[Any, str | None]

def _normalize_text(fv: FieldValue) -> str:
    """Normalized textual form used for hashing and code lookups."""
    if fv.kind is ValueKind.STRING:
        return str(fv.value).strip()
    if fv.kind is ValueKind.NUMBER:
        value = fv.value
        if isinstance(value, Decimal):
            value = value.normalize()
            return format(value, "f")
        return str(value)
    if fv.kind is ValueKind.DATE:
        return fv.value.isoformat()  # type: ignore[union-attr]
    if fv.kind is ValueKind.BOOL:
        return "true" if fv.value else "false"
    return ""


def hash_value(values: Sequence[FieldValue], salt: str | None = None) -> RuleOutcome:
    """SHA-256 of the trimmed, case-folded source value(s).

    Blank or NULL input gives None, never the digest of an empty string.
    Several sources are hashed as a JSON array so field boundaries stay
    distinct ("a|b", "c" vs "a", "b|c").
    """
    parts = [_normalize_text(v).casefold() for v in values]
    if not any(parts):
        return None, None
    payload = parts[0] if len(parts) == 1 else json.dumps(parts, ensure_ascii=False)
    if salt:
        payload = salt + payload
    return hashlib.sha256(payload.encode("utf-8")).hexdigest(), None


def coerce_date(fv: FieldValue) -> tuple[date | None, str | None]:
    """Return (date, invalid_text). invalid_text is set for non-blank bad input."""
    if fv.kind is ValueKind.DATE:
        return fv.value, None  # type: ignore[return-value]
    if fv.kind is ValueKind.NULL:
        return None, fv.raw
    text = _normalize_text(fv)
    if not text:
        return None, None
    if len(text) != 8 or not text.isdigit():
        return None, text
    try:
        return date(int(text[:4]), int(text[4:6]), int(text[6:])), None
    except ValueError:
        return None, text


def format_date(values: Sequence[FieldValue]) -> RuleOutcome:
    """YYYYMMDD source -> 'YYYY-MM-DD'. Invalid input -> None with a warning."""
    parsed, invalid = coerce_date(values[0])
    if parsed is not None:
        return parsed.isoformat(), None
    if invalid:
        return None, f"invalid date {invalid!r}"
    return None, None


def lookup_code(values: Sequence[FieldValue], tables: LookupTables, table: str) -> RuleOutcome:
    """Resolve a code against a lookup table.

    Several source fields are concatenated into one code (changwat + amphur).
    Blank -> None silently, unknown code -> None with a warning.
    """
    code = "".join(_normalize_text(v) for v in values)
    if not code:
        return None, None
    resolved = tables.resolve(table, code)
    if resolved is None:
        return None, f"code {code!r} not found in lookup table {table!r}"
    return resolved, None


def passthrough(values: Sequence[FieldValue]) -> RuleOutcome:
    fv = values[0]
    if fv.kind is ValueKind.STRING and fv.value == "":
        return None, None
    return fv.value, None


def fiscal_year(values: Sequence[FieldValue], params: Mapping[str, Any]) -> RuleOutcome:
    """Fiscal year of a date: calendar year, +1 from `start_month` on.

    params: start_month (default 10), era_offset (543 for Buddhist era years).
    """
    start_month = int(params.get("start_month", 10))
    era_offset = int(params.get("era_offset", 0))
    parsed, invalid = coerce_date(values[0])
    if parsed is None:
        return None, (f"fiscal year from invalid date {invalid!r}" if invalid else None)
    year = parsed.year + 1 if parsed.month >= start_month else parsed.year
    return year + era_offset, None


def length_of_stay(values: Sequence[FieldValue], params: Mapping[str, Any]) -> RuleOutcome:
    """Days between admission (first source) and discharge (second source)."""
    if len(values) < 2:
        return None, "length_of_stay needs admission and discharge dates"
    admitted, _ = coerce_date(values[0])
    discharged, _ = coerce_date(values[1])
    if admitted is None or discharged is None:
        return None, None
    days = (discharged - admitted).days
    if days < 0:
        return None, f"discharge {discharged.isoformat()} before admission {admitted.isoformat()}"
    return days, None


CALCULATIONS: dict[str, Callable[[Sequence[FieldValue], Mapping[str, Any]], RuleOutcome]] = {
    "fiscal_year": fiscal_year,
    "length_of_stay": length_of_stay,
}
