"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production) with automatic schema
creation. Statements are written with '?' placeholders and translated for
psycopg2.

Money columns are TEXT holding Decimal strings; sums are computed in Python
so no aggregate ever passes through a float.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional, Sequence

import structlog

logger = structlog.get_logger()

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Sealed usage records (immutable apart from status, invoice and notes)
CREATE TABLE IF NOT EXISTS usage_records (
    usage_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    document_id TEXT,
    timestamp TEXT NOT NULL,
    service_type TEXT NOT NULL,
    model TEXT NOT NULL,
    tier TEXT NOT NULL,
    jurisdiction TEXT NOT NULL,
    tokens TEXT NOT NULL,  -- JSON object
    total_tokens INTEGER NOT NULL,
    cost TEXT NOT NULL,  -- JSON object, Decimal strings
    value TEXT NOT NULL,  -- JSON object, Decimal strings
    cost_billing TEXT NOT NULL,
    tax_amount TEXT NOT NULL,
    total_charge TEXT NOT NULL,
    catalog_version TEXT NOT NULL,
    billing_status TEXT NOT NULL DEFAULT 'PENDING',
    invoice_id TEXT,
    chain_sequence INTEGER NOT NULL,
    previous_hash TEXT NOT NULL,
    hashes TEXT NOT NULL,  -- JSON array
    signature TEXT NOT NULL,
    key_id TEXT NOT NULL,
    audit_notes TEXT NOT NULL DEFAULT '[]',  -- JSON array
    metadata TEXT NOT NULL DEFAULT '{}',  -- JSON object
    stored_at TEXT NOT NULL,
    UNIQUE (tenant_id, chain_sequence)
);

-- Invoices
CREATE TABLE IF NOT EXISTS invoices (
    invoice_id TEXT PRIMARY KEY,
    invoice_number TEXT NOT NULL UNIQUE,
    tenant_id TEXT NOT NULL,
    cycle_type TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    issued_at TEXT NOT NULL,
    due_date TEXT NOT NULL,
    currency TEXT NOT NULL,
    subtotal TEXT NOT NULL,
    tax_total TEXT NOT NULL,
    total TEXT NOT NULL,
    record_count INTEGER NOT NULL,
    total_tokens INTEGER NOT NULL,
    line_items TEXT NOT NULL,  -- JSON array
    status TEXT NOT NULL DEFAULT 'ISSUED',
    payment_reference TEXT NOT NULL,
    signature TEXT NOT NULL,
    key_id TEXT NOT NULL,
    paid_at TEXT
);

-- Advisory lock rows, one per tenant billing window
CREATE TABLE IF NOT EXISTS billing_cycles (
    tenant_id TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    cycle_type TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'OPEN',
    invoice_id TEXT,
    locked_at TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (tenant_id, period_start, period_end)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_tenant_time ON usage_records(tenant_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_usage_status ON usage_records(tenant_id, billing_status);
CREATE INDEX IF NOT EXISTS idx_usage_invoice ON usage_records(invoice_id);
CREATE INDEX IF NOT EXISTS idx_invoices_tenant ON invoices(tenant_id);
"""

# Timestamps stay TEXT on PostgreSQL too: the fixed-width UTC ISO strings
# are compared lexicographically by the window queries.
POSTGRES_SCHEMA_SQL = (
    SCHEMA_SQL
    .replace("TEXT NOT NULL,  -- JSON object", "JSONB NOT NULL,")
    .replace("TEXT NOT NULL,  -- JSON array", "JSONB NOT NULL,")
)


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        rows = db.execute("SELECT * FROM invoices WHERE tenant_id = ?", (tenant,))
        with db.transaction():
            db.execute(...)  # joins the open transaction

    Statements issued inside transaction() on the same thread join it. SQLite
    transactions start with BEGIN IMMEDIATE so concurrent writers serialize.
    ':memory:' SQLite is per-thread and unsuitable with a background writer.
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///wilsy_metering.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._init_lock = threading.Lock()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "wilsy_metering.db"

    def _sqlite_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self._get_sqlite_path(),
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,  # explicit BEGIN/COMMIT only
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    def _postgres_connection(self) -> Any:
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        return psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """
        Get a connection (thread-safe).

        Inside transaction() this is the transaction's connection. Outside,
        each SQLite statement autocommits and each PostgreSQL block commits
        on exit.
        """
        active = getattr(self._local, "tx", None)
        if active is not None:
            yield active
            return

        if not self.is_postgres:
            yield self._sqlite_connection()
            return

        conn = self._postgres_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """One atomic unit of work. Nested calls join the outer transaction."""
        active = getattr(self._local, "tx", None)
        if active is not None:
            yield active
            return

        if self.is_postgres:
            conn = self._postgres_connection()
        else:
            conn = self._sqlite_connection()
            conn.execute("BEGIN IMMEDIATE")

        self._local.tx = conn
        try:
            yield conn
            if self.is_postgres:
                conn.commit()
            else:
                conn.execute("COMMIT")
        except Exception:
            if self.is_postgres:
                conn.rollback()
            else:
                conn.execute("ROLLBACK")
            raise
        finally:
            self._local.tx = None
            if self.is_postgres:
                conn.close()

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "tx", None) is not None

    def _run(self, conn: Any, query: str, params: Sequence[Any]) -> Any:
        if self.is_postgres:
            cursor = conn.cursor()
            cursor.execute(query.replace("?", "%s"), tuple(params))
            return cursor
        return conn.execute(query, tuple(params))

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            now = datetime.now(timezone.utc).isoformat()
            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(POSTGRES_SCHEMA_SQL)
                else:
                    conn.executescript(SCHEMA_SQL)

                self._run(
                    conn,
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?) "
                    "ON CONFLICT (version) DO NOTHING",
                    (SCHEMA_VERSION, now),
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            cursor = self._run(conn, query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def execute_update(self, query: str, params: Sequence[Any] = ()) -> int:
        """Execute a write statement and return the affected row count."""
        with self.connection() as conn:
            return self._run(conn, query, params).rowcount

    def execute_many(self, query: str, params_list: List[Sequence[Any]]) -> int:
        """Execute a statement for every parameter set in one transaction."""
        with self.transaction() as conn:
            if self.is_postgres:
                cursor = conn.cursor()
                cursor.executemany(query.replace("?", "%s"), [tuple(p) for p in params_list])
                return cursor.rowcount
            cursor = conn.executemany(query, [tuple(p) for p in params_list])
            return cursor.rowcount

    def close(self) -> None:
        """Close this thread's database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
