from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

"""Config dataclasses for the DBF -> PostgreSQL migrator.

These are the typed forms of config/migrate.yml produced by
dbf_migrator.config.loader. Defaults mirror the destination the tool was
built for (`ipd_visit`).
"""

DEFAULT_TABLE = "ipd_visit"


@dataclass(frozen=True)
class DatabaseConfig:
    """Destination connection parameters.

    Environment variables (DATABASE_URL / PG*) take precedence over these values.
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None
    table: str = DEFAULT_TABLE
    pool_size: int = 4  # max open connections shared by all jobs


@dataclass(frozen=True)
class MigrationSettings:
    """Engine tuning shared by every job unless a job overrides it."""
    batch_size: int = 500
    max_retries: int = 3  # retries after the first failed commit attempt
    retry_backoff_seconds: float = 0.5
    queue_size: int = 1000  # bound of each stage queue
    include_deleted: bool = False
    encoding: str | None = None  # None = derive from DBF language driver byte
    strict_ordering: bool = True
    max_inflight_batches: int = 2  # only used when strict_ordering is False
    max_concurrent_jobs: int = 4
    max_file_size_mb: int = 50
    hash_salt: str | None = None
    conflict_columns: tuple[str, ...] = ()  # ON CONFLICT (...) DO NOTHING when set


class Operation(Enum):
    HASH = "hash"
    DATE_FORMAT = "dateFormat"
    LOOKUP = "lookup"
    CALCULATED = "calculated"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class TransformRule:
    """One named pipeline step: source field(s) -> exactly one target column."""
    name: str
    operation: Operation
    sources: tuple[str, ...]
    target: str
    nullable: bool = True
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MigrationConfig:
    """Root configuration object."""
    database: DatabaseConfig
    migration: MigrationSettings
    transforms: tuple[TransformRule, ...]
    lookups_source: str | None = None  # directory / workbook / yaml with lookup tables
    logs_directory: str = "./logs"
    jobs_directory: str | None = None  # persisted job snapshots (None = in memory only)
