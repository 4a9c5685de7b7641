from __future__ import annotations

import argparse
import dataclasses
import sys
from datetime import UTC, datetime
from pathlib import Path

import pandas as pd
import psycopg2
from dotenv import load_dotenv

from dbf_migrator.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config
from dbf_migrator.db.connection import ConnectionPool, check_connection
from dbf_migrator.dbf.reader import FormatError, open_dbf
from dbf_migrator.logging.event_log import EventLog
from dbf_migrator.logging.init import log_summary, set_debug, setup_logging
from dbf_migrator.models.config_models import MigrationConfig
from dbf_migrator.models.job import JobStatus
from dbf_migrator.models.processing_result import RunSummary
from dbf_migrator.services.job_store import JsonJobStore
from dbf_migrator.services.orchestrator import MigrationOrchestrator, SubmissionError
from dbf_migrator.services.progress import ProgressTracker
from dbf_migrator.services.summary import render_summary_line
from dbf_migrator.transform.lookup import LookupLoadError, LookupRegistry, load_lookup_tables
from dbf_migrator.transform.pipeline import TransformConfigError

"""CLI entrypoint.

    dbf-migrate [--config PATH] [--debug] [--include-deleted] FILE.dbf...
    dbf-migrate --inspect FILE.dbf [--rows N]
    dbf-migrate --check-connection
    dbf-migrate --list-jobs

Connection parameters come from .env (loaded with override, so it wins over
the process environment), then the process environment, then the config
file's `database` section.

Exit codes: 0 every job completed, 2 at least one job failed or a file was
rejected, 1 fatal (config, lookups, database unreachable).
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1


def _load_env_file(path: Path, override: bool = True) -> None:
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="dbf-migrate", description="DBF -> PostgreSQL migrator")
    p.add_argument("files", nargs="*", type=Path, metavar="FILE", help="DBF files to migrate")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Config YAML path")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--include-deleted", action="store_true", help="Migrate records flagged as deleted")
    p.add_argument("--inspect", type=Path, metavar="FILE", help="Print DBF fields & first records then exit")
    p.add_argument("--rows", type=int, default=5, help="Records shown by --inspect")
    p.add_argument("--encoding", help="Character field codec (default: from the DBF language driver)")
    p.add_argument("--check-connection", action="store_true", help="Verify the database connection then exit")
    p.add_argument("--list-jobs", action="store_true", help="Print persisted jobs then exit")
    return p.parse_args(argv)


def _inspect(path: Path, rows: int, encoding: str | None) -> int:
    try:
        reader = open_dbf(path, encoding=encoding)
    except FormatError as e:
        print(f"inspect: {e}")
        return EXIT_FATAL
    with reader:
        header = reader.header
        print(
            f"FILE: {path.name} version=0x{header.version:02X} records={header.record_count} "
            f"updated={header.last_update} encoding={reader.encoding}"
        )
        fields = pd.DataFrame(
            [(f.name, f.type.value, f.length, f.decimals) for f in reader.fields],
            columns=["name", "type", "length", "decimals"],
        )
        print(fields.to_string(index=False))
        sample = []
        for record in reader:
            sample.append({"#": record.record_number, **record.plain()})
            if len(sample) >= rows:
                break
    if sample:
        print(pd.DataFrame(sample).to_string(index=False))
    return EXIT_SUCCESS_ALL


def _list_jobs(cfg: MigrationConfig) -> int:
    if not cfg.jobs_directory:
        print("list-jobs: no jobs.state_directory configured")
        return EXIT_SUCCESS_ALL
    snaps = JsonJobStore(cfg.jobs_directory).load_all()
    if not snaps:
        print("no jobs")
        return EXIT_SUCCESS_ALL
    table = pd.DataFrame(
        [
            {
                "id": s.id,
                "file": s.file_name,
                "status": s.status.value,
                "progress": f"{s.progress_percent}%",
                "processed": s.records_processed,
                "skipped": s.records_skipped,
                "total": s.records_total,
                "attempt": s.attempt,
                "error": s.error.message if s.error else "",
            }
            for s in snaps
        ]
    )
    print(table.to_string(index=False))
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # None only: an empty list from tests must not fall back to sys.argv
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        set_debug(logger)
        logger.debug("debug mode enabled")

    if args.inspect is not None:
        return _inspect(args.inspect, args.rows, args.encoding)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    overrides = {}
    if args.include_deleted:
        overrides["include_deleted"] = True
    if args.encoding:
        overrides["encoding"] = args.encoding
    if overrides:
        cfg = dataclasses.replace(cfg, migration=dataclasses.replace(cfg.migration, **overrides))

    if args.list_jobs:
        return _list_jobs(cfg)

    if not args.files and not args.check_connection:
        logger.error("no DBF files given")
        return EXIT_FATAL

    try:
        lookups = LookupRegistry(load_lookup_tables(cfg.lookups_source) if cfg.lookups_source else None)
    except LookupLoadError as e:
        logger.error(f"lookups: {e}")
        return EXIT_FATAL

    pool = ConnectionPool.from_config(cfg.database)
    try:
        try:
            check_connection(pool, cfg.database.table)
        except psycopg2.Error as e:
            logger.error(f"database: {e}")
            return EXIT_FATAL
        if args.check_connection:
            return EXIT_SUCCESS_ALL
        return _migrate(cfg, pool, lookups, args.files)
    finally:
        pool.close()


def _migrate(cfg: MigrationConfig, pool: ConnectionPool, lookups: LookupRegistry, files: list[Path]) -> int:
    logger = setup_logging()
    events = EventLog(cfg.logs_directory)
    store = JsonJobStore(cfg.jobs_directory) if cfg.jobs_directory else None
    start_time = datetime.now(UTC)

    try:
        orchestrator = MigrationOrchestrator(cfg, pool, lookups=lookups, events=events, store=store)
    except TransformConfigError as e:
        logger.error(f"transforms: {e}")
        return EXIT_FATAL

    rejected = 0
    job_ids: list[str] = []
    with orchestrator, ProgressTracker(description="Migrating") as progress:
        orchestrator.subscribe(progress.update)
        for path in files:
            try:
                job_ids.append(orchestrator.submit_job(path))
            except SubmissionError as e:
                rejected += 1
                logger.error(f"{path}: {e}")
        for job_id in job_ids:
            orchestrator.wait(job_id)
        stats = [orchestrator.job_stat(job_id) for job_id in job_ids]

    for stat in stats:
        logger.debug(
            f"{stat.job_id} {stat.file_name} status={stat.status} rows={stat.processed_records} "
            f"skipped={stat.skipped_records} batches={stat.total_batches} "
            f"avg_batch={stat.avg_batch_seconds:.3f}s p95_batch={stat.p95_batch_seconds:.3f}s"
        )
    logger.info(f"event log written to {events.file_path}")

    result = RunSummary.from_stats(stats, start_time, datetime.now(UTC))
    # log_summary adds the SUMMARY label itself
    log_summary(render_summary_line(result)[len("SUMMARY "):])

    if rejected or any(s.status != JobStatus.COMPLETED.value for s in stats):
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
