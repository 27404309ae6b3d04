"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema bootstrap.
All writes go through `Database.transaction()`, which commits on success and
rolls back on every other exit path.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS drivers (
    email TEXT PRIMARY KEY,
    balance TEXT NOT NULL DEFAULT '0.00',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS parking_owners (
    email TEXT PRIMARY KEY,
    lat REAL,
    lon REAL,
    balance TEXT NOT NULL DEFAULT '0.00',
    payment_policy TEXT NOT NULL,  -- rate per minute
    penalty_threshold_minutes TEXT,
    penalty_rate_per_minute TEXT,
    created_at TEXT NOT NULL
);

-- Sessions are never deleted
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    driver_email TEXT NOT NULL,
    parking_owner_email TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    payment_status TEXT NOT NULL DEFAULT 'unpaid'
        CHECK (payment_status IN ('unpaid', 'paid')),
    settled_total_amount TEXT,
    settled_penalty_amount TEXT,
    FOREIGN KEY (driver_email) REFERENCES drivers(email),
    FOREIGN KEY (parking_owner_email) REFERENCES parking_owners(email)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- At most one active session per driver
CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active
    ON sessions(driver_email) WHERE end_time IS NULL;
CREATE INDEX IF NOT EXISTS idx_sessions_driver ON sessions(driver_email);
CREATE INDEX IF NOT EXISTS idx_sessions_owner ON sessions(parking_owner_email);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS drivers (
    email TEXT PRIMARY KEY,
    balance NUMERIC(14, 2) NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS parking_owners (
    email TEXT PRIMARY KEY,
    lat DOUBLE PRECISION,
    lon DOUBLE PRECISION,
    balance NUMERIC(14, 2) NOT NULL DEFAULT 0,
    payment_policy NUMERIC(14, 2) NOT NULL,
    penalty_threshold_minutes NUMERIC(10, 2),
    penalty_rate_per_minute NUMERIC(14, 2),
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    driver_email TEXT NOT NULL REFERENCES drivers(email),
    parking_owner_email TEXT NOT NULL REFERENCES parking_owners(email),
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ,
    payment_status TEXT NOT NULL DEFAULT 'unpaid'
        CHECK (payment_status IN ('unpaid', 'paid')),
    settled_total_amount NUMERIC(14, 2),
    settled_penalty_amount NUMERIC(14, 2)
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_one_active
    ON sessions(driver_email) WHERE end_time IS NULL;
CREATE INDEX IF NOT EXISTS idx_sessions_driver ON sessions(driver_email);
CREATE INDEX IF NOT EXISTS idx_sessions_owner ON sessions(parking_owner_email);
"""


class StorageError(Exception):
    """Raised when the storage layer fails inside a transaction."""
    pass


class DuplicateKeyError(StorageError):
    """Raised when a uniqueness constraint is violated."""
    pass


class Transaction:
    """
    A single unit of work bound to one connection.

    Queries are written with `?` placeholders and rewritten for PostgreSQL.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self.conn = conn
        self.is_postgres = is_postgres

    @property
    def lock_clause(self) -> str:
        """Row-lock suffix for SELECTs that precede an update."""
        # SQLite write transactions are BEGIN IMMEDIATE and already exclusive
        return " FOR UPDATE" if self.is_postgres else ""

    def _prepare(self, query: str) -> str:
        return query.replace("?", "%s") if self.is_postgres else query

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        if self.is_postgres:
            cursor = self.conn.cursor()
            cursor.execute(self._prepare(query), params)
        else:
            cursor = self.conn.execute(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute_update(self, query: str, params: tuple = ()) -> int:
        """Execute a write and return the affected row count."""
        if self.is_postgres:
            cursor = self.conn.cursor()
            cursor.execute(self._prepare(query), params)
        else:
            cursor = self.conn.execute(query, params)
        return cursor.rowcount


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.execute("SELECT * FROM sessions")
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///parkledger.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "parkledger.db"

    def _sqlite_conn(self) -> sqlite3.Connection:
        """Thread-local SQLite connection in autocommit mode (transactions are explicit)."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            conn = sqlite3.connect(
                self._get_sqlite_path(),
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    def _postgres_conn(self) -> Any:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    def _translate(self, exc: Exception) -> Optional[StorageError]:
        """Map a driver exception onto the storage error taxonomy."""
        # Only unique violations are duplicates; FK, CHECK and NOT NULL failures are not
        if self.is_postgres:
            import psycopg2
            from psycopg2 import errors
            if isinstance(exc, errors.UniqueViolation):
                return DuplicateKeyError(str(exc))
            if isinstance(exc, psycopg2.Error):
                return StorageError(str(exc))
            return None

        if isinstance(exc, sqlite3.IntegrityError) and "UNIQUE constraint failed" in str(exc):
            return DuplicateKeyError(str(exc))
        if isinstance(exc, sqlite3.Error):
            return StorageError(str(exc))
        return None

    @contextmanager
    def transaction(self, readonly: bool = False) -> Generator[Transaction, None, None]:
        """
        Scoped unit of work.

        Commits when the block exits normally, rolls back on any exception.
        Driver errors are re-raised as StorageError / DuplicateKeyError; all
        other exceptions propagate unchanged after the rollback.
        """
        if self.is_postgres:
            cm = self._postgres_transaction(readonly)
        else:
            cm = self._sqlite_transaction(readonly)

        try:
            with cm as tx:
                yield tx
        except Exception as e:
            translated = self._translate(e)
            if translated is not None:
                raise translated from e
            raise

    @contextmanager
    def _sqlite_transaction(self, readonly: bool) -> Generator[Transaction, None, None]:
        conn = self._sqlite_conn()
        # IMMEDIATE takes the write lock up front so check-then-write cannot interleave
        conn.execute("BEGIN" if readonly else "BEGIN IMMEDIATE")
        try:
            yield Transaction(conn, is_postgres=False)
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    @contextmanager
    def _postgres_transaction(self, readonly: bool) -> Generator[Transaction, None, None]:
        conn = self._postgres_conn()
        try:
            if readonly:
                conn.set_session(readonly=True)
            yield Transaction(conn, is_postgres=True)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            if self.is_postgres:
                with self.transaction() as tx:
                    tx.conn.cursor().execute(POSTGRES_SCHEMA_SQL)
                    tx.execute_update(
                        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now)
                    )
            else:
                self._sqlite_conn().executescript(SCHEMA_SQL)
                with self.transaction() as tx:
                    tx.execute_update(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now)
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None
