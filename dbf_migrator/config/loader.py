from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.config_models import (
    DatabaseConfig,
    MigrationConfig,
    MigrationSettings,
    Operation,
    TransformRule,
)

"""Config loader.

Responsibilities:
- Load YAML config (default config/migrate.yml)
- Validate against config_schema.json shipped next to this module
- Apply defaults (table=ipd_visit, batch_size=500, max_retries=3, ...)
- Turn the `transforms` list into ordered TransformRule objects
"""

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")
DEFAULT_CONFIG_PATH = Path("config/migrate.yml")


class ConfigError(Exception):
    pass


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against JSON schema.

    Raises:
        ConfigError: schema file missing / not valid JSON, or the config data
            fails validation (missing keys, wrong types, extra keys).
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def _parse_rule(index: int, raw: dict[str, Any]) -> TransformRule:
    target = raw["target"]
    operation = Operation(raw["operation"])
    if "sources" in raw:
        sources = tuple(raw["sources"])
    elif "source" in raw:
        sources = (raw["source"],)
    else:
        raise ConfigError(f"transforms[{index}] ({target}): 'source' or 'sources' is required")

    params: dict[str, Any] = dict(raw.get("params") or {})
    if operation is Operation.LOOKUP:
        table = raw.get("table") or params.get("table")
        if not table:
            raise ConfigError(f"transforms[{index}] ({target}): lookup needs 'table'")
        params["table"] = table
    elif operation is Operation.CALCULATED:
        function = raw.get("function") or params.get("function")
        if not function:
            raise ConfigError(f"transforms[{index}] ({target}): calculated needs 'function'")
        params["function"] = function

    return TransformRule(
        name=raw.get("name") or f"{operation.value}:{target}",
        operation=operation,
        sources=sources,
        target=target,
        nullable=raw.get("nullable", True),
        params=params,
    )


def parse_config(data: dict[str, Any]) -> MigrationConfig:
    """Build MigrationConfig from an already-parsed mapping (validated here)."""
    _validate_config_schema(data)

    db_raw = data.get("database", {})
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
        table=db_raw.get("table", DatabaseConfig.table),
        pool_size=db_raw.get("pool_size", DatabaseConfig.pool_size),
    )

    mig_raw = dict(data.get("migration") or {})
    if "conflict_columns" in mig_raw:
        mig_raw["conflict_columns"] = tuple(mig_raw["conflict_columns"])
    settings = MigrationSettings(**mig_raw)

    rules = tuple(_parse_rule(i, r) for i, r in enumerate(data["transforms"]))
    targets = [r.target for r in rules]
    duplicates = sorted({t for t in targets if targets.count(t) > 1})
    if duplicates:
        raise ConfigError(f"duplicate transform targets: {duplicates}")

    lookups = data.get("lookups") or {}
    logs = data.get("logs") or {}
    jobs = data.get("jobs") or {}
    return MigrationConfig(
        database=db,
        migration=settings,
        transforms=rules,
        lookups_source=lookups.get("source"),
        logs_directory=logs.get("directory", "./logs"),
        jobs_directory=jobs.get("state_directory"),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> MigrationConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping: {path}")
    return parse_config(data)
