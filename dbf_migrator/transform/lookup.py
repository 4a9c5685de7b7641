from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import pandas as pd
import yaml

"""Static lookup tables (administrative division names, code lists).

Tables are loaded once and are read-only afterwards. Refreshing builds a new
LookupTables object and swaps the registry reference in one assignment, so a
record being transformed never sees a half-updated table set.

Supported sources:
- mapping {table: {code: name}}
- directory of <table>.csv files with `code` and `name` columns
- .xlsx workbook, one sheet per table (same columns)
- .yml / .yaml file holding the mapping form
"""

__all__ = [
    "LookupLoadError",
    "LookupTables",
    "LookupRegistry",
    "load_lookup_tables",
]

logger = logging.getLogger(__name__)

CODE_COLUMN = "code"
NAME_COLUMN = "name"


class LookupLoadError(Exception):
    pass


class LookupTables:
    """Immutable set of named code -> name tables."""

    def __init__(self, tables: Mapping[str, Mapping[Any, Any]] | None = None) -> None:
        frozen: dict[str, Mapping[str, str]] = {}
        for table, entries in (tables or {}).items():
            frozen[str(table)] = MappingProxyType(
                {_normalize_code(k): str(v) for k, v in entries.items()}
            )
        self._tables: Mapping[str, Mapping[str, str]] = MappingProxyType(frozen)

    @property
    def table_names(self) -> list[str]:
        return sorted(self._tables)

    def has_table(self, table: str) -> bool:
        return table in self._tables

    def resolve(self, table: str, code: Any) -> str | None:
        entries = self._tables.get(table)
        if entries is None or code is None:
            return None
        return entries.get(_normalize_code(code))

    def size(self, table: str) -> int:
        return len(self._tables.get(table, {}))


def _normalize_code(code: Any) -> str:
    text = str(code).strip()
    # numeric codes stored as 10.0 by spreadsheets
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    return text


def _frame_to_mapping(df: pd.DataFrame, origin: str) -> dict[str, str]:
    cols = {str(c).strip().lower(): c for c in df.columns}
    if CODE_COLUMN not in cols or NAME_COLUMN not in cols:
        raise LookupLoadError(f"{origin}: expected columns '{CODE_COLUMN}' and '{NAME_COLUMN}'")
    mapping: dict[str, str] = {}
    for code, name in zip(df[cols[CODE_COLUMN]], df[cols[NAME_COLUMN]], strict=True):
        key = _normalize_code(code)
        if not key:
            continue
        mapping[key] = str(name).strip()
    return mapping


def _load_directory(directory: Path) -> dict[str, dict[str, str]]:
    tables: dict[str, dict[str, str]] = {}
    for csv_path in sorted(directory.glob("*.csv")):
        try:
            # codes like "01" must keep their leading zero -> read everything as str, no NA parsing
            df = pd.read_csv(csv_path, dtype=str, keep_default_na=False, encoding="utf-8")
        except (OSError, ValueError, pd.errors.ParserError) as e:
            raise LookupLoadError(f"{csv_path}: {e}") from e
        tables[csv_path.stem] = _frame_to_mapping(df, str(csv_path))
    if not tables:
        raise LookupLoadError(f"no .csv lookup tables in {directory}")
    return tables


def _load_workbook(path: Path) -> dict[str, dict[str, str]]:
    try:
        sheets = pd.read_excel(path, sheet_name=None, dtype=str, keep_default_na=False)
    except (OSError, ValueError) as e:
        raise LookupLoadError(f"{path}: {e}") from e
    return {str(name): _frame_to_mapping(df, f"{path}:{name}") for name, df in sheets.items()}


def _load_yaml(path: Path) -> dict[str, dict[str, str]]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise LookupLoadError(f"{path}: {e}") from e
    if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
        raise LookupLoadError(f"{path}: expected a mapping of table -> {{code: name}}")
    return data


def load_lookup_tables(source: Path | str | Mapping[str, Mapping[Any, Any]]) -> LookupTables:
    """Load lookup tables from a mapping, directory, workbook or YAML file.

    Raises:
        LookupLoadError: source missing, unsupported or malformed
    """
    if isinstance(source, Mapping):
        return LookupTables(source)

    path = Path(source)
    if not path.exists():
        raise LookupLoadError(f"lookup source not found: {path}")
    if path.is_dir():
        tables = _load_directory(path)
    elif path.suffix == ".xlsx":
        tables = _load_workbook(path)
    elif path.suffix in (".yml", ".yaml"):
        tables = _load_yaml(path)
    else:
        raise LookupLoadError(f"unsupported lookup source: {path}")

    lookups = LookupTables(tables)
    logger.info(
        "lookup tables loaded from %s: %s",
        path,
        ", ".join(f"{t}={lookups.size(t)}" for t in lookups.table_names),
    )
    return lookups


class LookupRegistry:
    """Holder of the current LookupTables shared by all running jobs."""

    def __init__(self, tables: LookupTables | None = None) -> None:
        self._current = tables or LookupTables()
        self._swap_lock = threading.Lock()

    @property
    def current(self) -> LookupTables:
        return self._current

    def swap(self, tables: LookupTables) -> LookupTables:
        """Replace the table set; returns the previous one."""
        with self._swap_lock:
            previous = self._current
            self._current = tables
        return previous

    def reload(self, source: Path | str | Mapping[str, Mapping[Any, Any]]) -> LookupTables:
        """Load a fresh table set and swap it in. The old set stays on failure."""
        return self.swap(load_lookup_tables(source))
