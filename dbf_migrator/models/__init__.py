"""Domain models for the DBF -> PostgreSQL migrator.

Source side (DBF header, fields, records), transformed rows and batches,
jobs with their snapshots, events, and the typed configuration.
"""

from .config_models import DatabaseConfig, MigrationConfig, MigrationSettings, Operation, TransformRule
from .dbf_record import DbfField, DbfHeader, FieldType, FieldValue, RawRecord, ValueKind
from .event import Event, EventLevel
from .job import ErrorKind, InvalidStateError, Job, JobError, JobSnapshot, JobStatus
from .transformed_row import Batch, CommitResult, TransformedRow

__all__ = [
    # Configuration models
    "DatabaseConfig",
    "MigrationConfig",
    "MigrationSettings",
    "Operation",
    "TransformRule",
    # Source models
    "DbfField",
    "DbfHeader",
    "FieldType",
    "FieldValue",
    "RawRecord",
    "ValueKind",
    # Processing models
    "Batch",
    "CommitResult",
    "TransformedRow",
    "ErrorKind",
    "InvalidStateError",
    "Job",
    "JobError",
    "JobSnapshot",
    "JobStatus",
    "Event",
    "EventLevel",
]
