from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from ..models.config_models import Operation, TransformRule
from ..models.dbf_record import FieldValue, RawRecord
from ..models.transformed_row import TransformedRow
from . import rules as ops
from .lookup import LookupRegistry, LookupTables

"""Transform pipeline: RawRecord -> TransformedRow.

Rules run in declaration order. Every rule reads only its own source fields
from the RawRecord (never from the row being built), so rules stay
independent and can be reordered without changing results.
"""

__all__ = [
    "TransformError",
    "TransformConfigError",
    "TransformPipeline",
]

logger = logging.getLogger(__name__)

_SINGLE_SOURCE = (Operation.DATE_FORMAT, Operation.PASSTHROUGH)


class TransformConfigError(Exception):
    """Invalid rule set (duplicate targets, unknown function, ...)."""


class TransformError(Exception):
    """A record cannot produce a valid row. Only this record is skipped."""

    def __init__(self, record_number: int, column: str, reason: str) -> None:
        super().__init__(f"record {record_number}: column {column!r} {reason}")
        self.record_number = record_number
        self.column = column
        self.reason = reason


class TransformPipeline:
    def __init__(
        self,
        rules: Iterable[TransformRule],
        lookups: LookupRegistry | LookupTables | None = None,
        *,
        hash_salt: str | None = None,
    ) -> None:
        self.rules: tuple[TransformRule, ...] = tuple(rules)
        if isinstance(lookups, LookupRegistry):
            self._registry = lookups
        else:
            self._registry = LookupRegistry(lookups)
        self.hash_salt = hash_salt
        self._validate()

    def _validate(self) -> None:
        if not self.rules:
            raise TransformConfigError("pipeline has no rules")
        seen: set[str] = set()
        for rule in self.rules:
            if rule.target in seen:
                raise TransformConfigError(f"duplicate target column {rule.target!r}")
            seen.add(rule.target)
            if not rule.sources:
                raise TransformConfigError(f"rule {rule.name!r} has no source field")
            if rule.operation in _SINGLE_SOURCE and len(rule.sources) != 1:
                raise TransformConfigError(
                    f"rule {rule.name!r}: {rule.operation.value} takes exactly one source"
                )
            if rule.operation is Operation.LOOKUP and not rule.params.get("table"):
                raise TransformConfigError(f"rule {rule.name!r}: lookup table not set")
            if rule.operation is Operation.CALCULATED:
                function = rule.params.get("function")
                if function not in ops.CALCULATIONS:
                    raise TransformConfigError(
                        f"rule {rule.name!r}: unknown function {function!r} "
                        f"(known: {sorted(ops.CALCULATIONS)})"
                    )

    @property
    def columns(self) -> list[str]:
        """Target columns in declaration order (= INSERT column order)."""
        return [r.target for r in self.rules]

    @property
    def source_fields(self) -> list[str]:
        names: list[str] = []
        for rule in self.rules:
            for s in rule.sources:
                if s not in names:
                    names.append(s)
        return names

    def missing_sources(self, field_names: Sequence[str]) -> list[str]:
        """Declared source fields that the DBF header does not have."""
        available = set(field_names)
        return [s for s in self.source_fields if s not in available]

    def missing_lookup_tables(self) -> list[str]:
        tables = self._registry.current
        wanted = {r.params["table"] for r in self.rules if r.operation is Operation.LOOKUP}
        return sorted(t for t in wanted if not tables.has_table(t))

    def _run_rule(
        self, rule: TransformRule, sources: Sequence[FieldValue], tables: LookupTables
    ) -> ops.RuleOutcome:
        op = rule.operation
        if op is Operation.HASH:
            return ops.hash_value(sources, self.hash_salt)
        if op is Operation.DATE_FORMAT:
            return ops.format_date(sources)
        if op is Operation.LOOKUP:
            return ops.lookup_code(sources, tables, rule.params["table"])
        if op is Operation.CALCULATED:
            return ops.CALCULATIONS[rule.params["function"]](sources, rule.params)
        return ops.passthrough(sources)

    def apply(self, raw: RawRecord) -> TransformedRow:
        """Transform one record.

        Raises:
            TransformError: a non-nullable column would be left empty
        """
        tables = self._registry.current  # one table set for the whole record
        values: dict[str, Any] = {}
        warnings: list[str] = []
        for rule in self.rules:
            sources = [raw.get(name) for name in rule.sources]
            value, warning = self._run_rule(rule, sources, tables)
            if warning:
                warnings.append(f"{rule.target}: {warning}")
            if value is None and not rule.nullable:
                reason = warning or f"is required but source {', '.join(rule.sources)} is empty"
                raise TransformError(raw.record_number, rule.target, reason)
            values[rule.target] = value
        return TransformedRow(
            record_number=raw.record_number, values=values, warnings=tuple(warnings)
        )
