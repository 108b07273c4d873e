"""Database layer for the scheduler and workflow engine.

Supports two backends:
- PostgreSQL (production, set JOBFLOW_DATABASE_URL env var)
- SQLite (local development and tests, default)

Uses raw SQL via psycopg2 (Postgres) or sqlite3 (SQLite) for simplicity.
No ORM. Statements are written with %s placeholders and adapted to ? for
SQLite at execution time.

Thread-safety: Postgres uses a ThreadedConnectionPool for connection reuse.
SQLite uses per-call connections with check_same_thread=False and a busy
timeout, so concurrent pollers queue on the database write lock instead of
failing.

Claiming: on Postgres, claim queries append FOR UPDATE [SKIP LOCKED] (see
lock_clause). SQLite has no row locks; transaction() opens every transaction
with BEGIN IMMEDIATE, which takes the database write lock up front so two
claimants can never read the same pending rows.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

# Database URL: postgres://... for Postgres, or empty for SQLite
DATABASE_URL = os.environ.get("JOBFLOW_DATABASE_URL", "")

# SQLite default path
SQLITE_PATH = Path(
    os.environ.get("JOBFLOW_SQLITE_PATH", str(Path(__file__).parent / "jobflow.db"))
)

SQLITE_BUSY_TIMEOUT_SECONDS = 30

_initialized = False
_pg_pool = None


def _is_postgres() -> bool:
    """Check if we're using Postgres."""
    return DATABASE_URL.startswith("postgres")


def _get_pg_pool():
    """Get or create the Postgres connection pool (lazy singleton)."""
    global _pg_pool
    if _pg_pool is None:
        import psycopg2.pool
        _pg_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=10,
            dsn=DATABASE_URL,
        )
        logger.info("PostgreSQL connection pool initialized (1-10 connections)")
    return _pg_pool


@contextmanager
def get_connection():
    """Get a database connection (Postgres or SQLite).

    SQLite connections run with isolation_level=None so that transaction
    boundaries are explicit (see transaction()).

    Usage:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(...)
            conn.commit()
    """
    if _is_postgres():
        pool = _get_pg_pool()
        conn = pool.getconn()
        try:
            yield conn
        finally:
            pool.putconn(conn)
    else:
        conn = sqlite3.connect(
            str(SQLITE_PATH),
            check_same_thread=False,
            timeout=SQLITE_BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()


def _json_dumps(data: Any) -> str:
    """Serialize data to JSON string for storage."""
    return json.dumps(data, ensure_ascii=False, default=str)


def _json_loads(text: Any) -> Any:
    """Deserialize JSON string from storage."""
    if text is None or text == "":
        return None
    if not isinstance(text, (str, bytes)):
        return text  # Already parsed (Postgres JSONB)
    return json.loads(text)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Format a datetime for storage.

    Naive datetimes are taken to be UTC. The fixed-width ISO form keeps
    string comparison chronological on SQLite; Postgres casts it to TIMESTAMPTZ.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored or user-supplied timestamp into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_timestamps(row: dict) -> dict:
    """Convert datetime values to ISO strings (Postgres returns datetimes for TIMESTAMPTZ columns)."""
    for key, val in row.items():
        if isinstance(val, datetime):
            row[key] = to_db_timestamp(val)
    return row


def lock_clause(skip_locked: bool = False) -> str:
    """Row-lock suffix for a SELECT inside transaction().

    Empty on SQLite, where BEGIN IMMEDIATE already serializes writers.
    """
    if not _is_postgres():
        return ""
    return " FOR UPDATE SKIP LOCKED" if skip_locked else " FOR UPDATE"


def _adapt_sql(sql: str) -> str:
    if _is_postgres():
        return sql
    return sql.replace("%s", "?")


def _fetch(cursor, fetch: str) -> Any:
    if fetch == "none":
        return None
    if fetch == "rowcount":
        return cursor.rowcount
    if fetch == "one":
        row = cursor.fetchone()
        if row is None:
            return None
        if _is_postgres():
            columns = [desc[0] for desc in cursor.description]
            return dict(zip(columns, row))
        return dict(row)
    if fetch == "all":
        rows = cursor.fetchall()
        if _is_postgres():
            columns = [desc[0] for desc in cursor.description]
            return [dict(zip(columns, row)) for row in rows]
        return [dict(row) for row in rows]
    raise ValueError(f"Unknown fetch mode: {fetch}")


def execute(sql: str, params: tuple = (), fetch: str = "none") -> Any:
    """Execute a single SQL statement in its own transaction.

    Args:
        sql: SQL statement with %s placeholders
        params: Parameters tuple
        fetch: "none", "one", "all", "rowcount"

    Returns:
        None for "none", dict for "one", list[dict] for "all",
        affected row count for "rowcount"
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        try:
            cursor.execute(_adapt_sql(sql), params)
            result = _fetch(cursor, fetch)
        except Exception:
            conn.rollback()
            raise
        conn.commit()
        return result


class Transaction:
    """A unit of work bound to one connection, yielded by transaction()."""

    def __init__(self, conn):
        self._conn = conn
        self._cursor = conn.cursor()

    def execute(self, sql: str, params: tuple = (), fetch: str = "none") -> Any:
        """Same contract as the module-level execute(), without committing."""
        self._cursor.execute(_adapt_sql(sql), params)
        return _fetch(self._cursor, fetch)


@contextmanager
def transaction():
    """Run several statements atomically.

    Commits when the block exits cleanly and rolls back if it raises.

    Usage:
        with transaction() as tx:
            rows = tx.execute("SELECT ..." + lock_clause(), (...), fetch="all")
            tx.execute("UPDATE ...", (...))
    """
    with get_connection() as conn:
        if not _is_postgres():
            conn.execute("BEGIN IMMEDIATE")
        tx = Transaction(conn)
        try:
            yield tx
        except Exception:
            conn.rollback()
            raise
        conn.commit()


def init_db():
    """Create tables if they don't exist."""
    global _initialized
    if _initialized:
        return

    if _is_postgres():
        _init_postgres()
    else:
        _init_sqlite()

    _initialized = True
    backend = "PostgreSQL" if _is_postgres() else f"SQLite ({SQLITE_PATH})"
    logger.info(f"Jobflow database initialized: {backend}")


def _init_postgres():
    """Create Postgres tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS scheduled_jobs (
        id VARCHAR(100) PRIMARY KEY,
        name VARCHAR(200) NOT NULL,
        type VARCHAR(20) NOT NULL,
        job_type VARCHAR(50) NOT NULL,
        data JSONB NOT NULL DEFAULT '{}',
        scheduled_time TIMESTAMPTZ NOT NULL,
        recurrence_rule VARCHAR(200),
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        backoff_seconds INTEGER NOT NULL DEFAULT 300,
        execution_count INTEGER NOT NULL DEFAULT 0,
        workflow_execution_id VARCHAR(100),
        idempotency_key VARCHAR(300) UNIQUE,
        created_by VARCHAR(200),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_due
        ON scheduled_jobs(status, scheduled_time);

    CREATE TABLE IF NOT EXISTS job_results (
        id VARCHAR(100) PRIMARY KEY,
        job_id VARCHAR(100) NOT NULL REFERENCES scheduled_jobs(id),
        execution_number INTEGER NOT NULL,
        attempt INTEGER NOT NULL,
        status VARCHAR(20) NOT NULL,
        output_data JSONB,
        error_message TEXT,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        executed_at TIMESTAMPTZ DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_job_results_job
        ON job_results(job_id, execution_number, attempt);

    CREATE TABLE IF NOT EXISTS workflows (
        id VARCHAR(100) PRIMARY KEY,
        name VARCHAR(200) NOT NULL,
        description TEXT DEFAULT '',
        created_by VARCHAR(200),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    );

    CREATE TABLE IF NOT EXISTS workflow_steps (
        id VARCHAR(100) PRIMARY KEY,
        workflow_id VARCHAR(100) NOT NULL REFERENCES workflows(id),
        step_number INTEGER NOT NULL,
        name VARCHAR(200) DEFAULT '',
        type VARCHAR(50) NOT NULL,
        config JSONB NOT NULL DEFAULT '{}',
        UNIQUE(workflow_id, step_number)
    );

    CREATE TABLE IF NOT EXISTS workflow_executions (
        id VARCHAR(100) PRIMARY KEY,
        workflow_id VARCHAR(100) NOT NULL REFERENCES workflows(id),
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        current_step_number INTEGER NOT NULL DEFAULT 1,
        variables JSONB NOT NULL DEFAULT '{}',
        init_data JSONB NOT NULL DEFAULT '{}',
        created_by VARCHAR(200),
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW(),
        completed_at TIMESTAMPTZ
    );

    CREATE TABLE IF NOT EXISTS workflow_execution_steps (
        id VARCHAR(100) PRIMARY KEY,
        execution_id VARCHAR(100) NOT NULL REFERENCES workflow_executions(id),
        step_id VARCHAR(100),
        step_number INTEGER NOT NULL,
        status VARCHAR(20) NOT NULL,
        output_data JSONB,
        error_message TEXT,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        executed_at TIMESTAMPTZ DEFAULT NOW()
    );

    CREATE INDEX IF NOT EXISTS idx_execution_steps_execution
        ON workflow_execution_steps(execution_id, executed_at);
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(ddl)
        conn.commit()


def _init_sqlite():
    """Create SQLite tables."""
    ddl = """
    CREATE TABLE IF NOT EXISTS scheduled_jobs (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        job_type TEXT NOT NULL,
        data TEXT NOT NULL DEFAULT '{}',
        scheduled_time TEXT NOT NULL,
        recurrence_rule TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        backoff_seconds INTEGER NOT NULL DEFAULT 300,
        execution_count INTEGER NOT NULL DEFAULT 0,
        workflow_execution_id TEXT,
        idempotency_key TEXT UNIQUE,
        created_by TEXT,
        created_at TEXT,
        updated_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_due
        ON scheduled_jobs(status, scheduled_time);

    CREATE TABLE IF NOT EXISTS job_results (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES scheduled_jobs(id),
        execution_number INTEGER NOT NULL,
        attempt INTEGER NOT NULL,
        status TEXT NOT NULL,
        output_data TEXT,
        error_message TEXT,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        executed_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_job_results_job
        ON job_results(job_id, execution_number, attempt);

    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT DEFAULT '',
        created_by TEXT,
        created_at TEXT,
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS workflow_steps (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL REFERENCES workflows(id),
        step_number INTEGER NOT NULL,
        name TEXT DEFAULT '',
        type TEXT NOT NULL,
        config TEXT NOT NULL DEFAULT '{}',
        UNIQUE(workflow_id, step_number)
    );

    CREATE TABLE IF NOT EXISTS workflow_executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL REFERENCES workflows(id),
        status TEXT NOT NULL DEFAULT 'active',
        current_step_number INTEGER NOT NULL DEFAULT 1,
        variables TEXT NOT NULL DEFAULT '{}',
        init_data TEXT NOT NULL DEFAULT '{}',
        created_by TEXT,
        created_at TEXT,
        updated_at TEXT,
        completed_at TEXT
    );

    CREATE TABLE IF NOT EXISTS workflow_execution_steps (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
        step_id TEXT,
        step_number INTEGER NOT NULL,
        status TEXT NOT NULL,
        output_data TEXT,
        error_message TEXT,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        executed_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_execution_steps_execution
        ON workflow_execution_steps(execution_id, executed_at);
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.executescript(ddl)
        conn.commit()
