from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from psycopg2.pool import ThreadedConnectionPool

from ..models.config_models import DatabaseConfig
from .batch_insert import quote_table

"""Destination connection handling.

Connection parameter priority:
    1. DATABASE_URL / PGDSN (whole DSN)
    2. PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
    3. `database` section of the config file

ConnectionPool is shared by every job. It blocks callers when all
connections are checked out instead of raising like ThreadedConnectionPool.
"""

__all__ = [
    "ConnectionPool",
    "resolve_dsn",
    "check_connection",
]

logger = logging.getLogger(__name__)


def resolve_dsn(db_cfg: DatabaseConfig) -> str:
    dsn_env = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn_env:
        return dsn_env
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


class ConnectionPool:
    """Bounded, blocking wrapper over psycopg2 ThreadedConnectionPool."""

    def __init__(self, dsn: str, *, max_connections: int = 4, min_connections: int = 0) -> None:
        self.max_connections = max_connections
        self._pool = ThreadedConnectionPool(min_connections, max_connections, dsn)
        self._slots = threading.BoundedSemaphore(max_connections)

    @classmethod
    def from_config(cls, db_cfg: DatabaseConfig) -> ConnectionPool:
        return cls(resolve_dsn(db_cfg), max_connections=db_cfg.pool_size)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Check out a connection for one unit of work (autocommit off)."""
        self._slots.acquire()
        try:
            conn = self._pool.getconn()
            try:
                conn.autocommit = False
                yield conn
            finally:
                # a connection closed by a network error must not go back in the pool
                self._pool.putconn(conn, close=bool(conn.closed))
        finally:
            self._slots.release()

    def close(self) -> None:
        self._pool.closeall()

    def __enter__(self) -> ConnectionPool:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


def check_connection(pool: ConnectionPool, table: str | None = None) -> str:
    """Run a trivial query (and optionally touch `table`). Returns the server version."""
    with pool.connection() as conn:
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT version()")
                version = cur.fetchone()[0]
                if table:
                    cur.execute(f"SELECT 1 FROM {quote_table(table)} LIMIT 0")
        finally:
            conn.rollback()
    logger.info("database reachable: %s", version)
    return version
