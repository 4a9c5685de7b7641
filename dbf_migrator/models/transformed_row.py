from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

"""Destination-side row models.

TransformedRow is what the transform pipeline hands to the batch writer,
Batch groups rows for a single transaction and CommitResult reports one
committed transaction.
"""

__all__ = [
    "TransformedRow",
    "Batch",
    "CommitResult",
]


@dataclass(frozen=True)
class TransformedRow:
    """One destination row produced from one RawRecord."""
    record_number: int  # source record position, used for error reporting
    values: dict[str, Any]  # target column -> destination value (pipeline column order)
    warnings: tuple[str, ...] = ()

    def as_tuple(self, columns: Sequence[str]) -> tuple[Any, ...]:
        return tuple(self.values.get(c) for c in columns)


@dataclass
class Batch:
    """Bounded ordered group of rows committed as one transaction.

    The last batch of a job may hold fewer rows than the configured size.
    """
    number: int  # 1-based
    rows: list[TransformedRow] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    @property
    def first_record(self) -> int | None:
        return self.rows[0].record_number if self.rows else None

    @property
    def last_record(self) -> int | None:
        return self.rows[-1].record_number if self.rows else None


@dataclass(frozen=True)
class CommitResult:
    batch_number: int
    rows: int
    attempts: int  # 1 = committed on first try
    elapsed_seconds: float
    first_record: int | None = None
    last_record: int | None = None
