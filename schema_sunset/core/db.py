"""
SQLite connections for the metadata store and the target database.

The metadata store is a separate database file so that deprecation history
survives independently of the elements it describes.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from .config import METADATA_DB_PATH, TARGET_DB_PATH

META_ALIAS = "meta"

METADATA_TABLES = (
    "deprecation_records",
    "approval_records",
    "safety_results",
    "backup_records",
    "access_events",
    "access_daily",
    "rollback_scripts",
    "audit_log",
)

_SCHEMA = (
    '''
    CREATE TABLE IF NOT EXISTS {s}.deprecation_records (
        id TEXT PRIMARY KEY,
        element_key TEXT NOT NULL,
        element_kind TEXT NOT NULL,
        element_owner TEXT,
        original_name TEXT NOT NULL,
        deprecated_name TEXT,
        reason TEXT NOT NULL,
        created_by TEXT NOT NULL,
        environment TEXT NOT NULL,
        phase TEXT NOT NULL,
        risk_level TEXT,
        backup_id TEXT,
        rollback_script_id TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        body TEXT NOT NULL        -- full record as JSON
    )
    ''',
    # at most one active record per element
    '''
    CREATE UNIQUE INDEX IF NOT EXISTS {s}.idx_deprecation_active_element
    ON deprecation_records(element_key)
    WHERE phase NOT IN ('phase2_complete', 'rolled_back')
    ''',
    'CREATE INDEX IF NOT EXISTS {s}.idx_deprecation_deprecated_name ON deprecation_records(deprecated_name)',
    '''
    CREATE TABLE IF NOT EXISTS {s}.approval_records (
        id TEXT PRIMARY KEY,
        deprecation_id TEXT NOT NULL,
        approver TEXT NOT NULL,
        role TEXT NOT NULL,
        decision TEXT NOT NULL,
        justification TEXT,
        decided_at TIMESTAMP NOT NULL,
        invalidated BOOLEAN DEFAULT FALSE
    )
    ''',
    'CREATE INDEX IF NOT EXISTS {s}.idx_approval_deprecation ON approval_records(deprecation_id, decided_at)',
    '''
    CREATE TABLE IF NOT EXISTS {s}.safety_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        deprecation_id TEXT NOT NULL,
        attempt_id TEXT NOT NULL,
        phase INTEGER NOT NULL,
        risk_level TEXT NOT NULL,
        check_name TEXT NOT NULL,
        severity TEXT NOT NULL,
        passed BOOLEAN NOT NULL,
        message TEXT NOT NULL,
        remediation TEXT,
        details TEXT,
        ts TIMESTAMP NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS {s}.idx_safety_deprecation ON safety_results(deprecation_id, id)',
    '''
    CREATE TABLE IF NOT EXISTS {s}.backup_records (
        id TEXT PRIMARY KEY,
        element_key TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        checksum TEXT NOT NULL,
        status TEXT NOT NULL,
        location TEXT NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        encrypted BOOLEAN DEFAULT FALSE,
        row_count INTEGER DEFAULT 0,
        diagnostic TEXT,
        verified_at TIMESTAMP
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS {s}.access_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        element_key TEXT NOT NULL,
        operation TEXT NOT NULL,
        source TEXT NOT NULL,
        source_identifier TEXT,
        latency_ms REAL,
        ts TIMESTAMP NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS {s}.idx_access_element_ts ON access_events(element_key, ts)',
    '''
    CREATE TABLE IF NOT EXISTS {s}.access_daily (
        element_key TEXT NOT NULL,
        day TEXT NOT NULL,
        source TEXT NOT NULL,
        operation TEXT NOT NULL,
        event_count INTEGER NOT NULL,
        last_seen TIMESTAMP NOT NULL,
        PRIMARY KEY (element_key, day, source, operation)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS {s}.rollback_scripts (
        id TEXT PRIMARY KEY,
        deprecation_id TEXT NOT NULL,
        mode TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        body TEXT NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS {s}.idx_rollback_deprecation ON rollback_scripts(deprecation_id, created_at)',
    '''
    CREATE TABLE IF NOT EXISTS {s}.audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        deprecation_id TEXT,
        ts TIMESTAMP NOT NULL,
        actor TEXT NOT NULL,
        action TEXT NOT NULL,
        payload TEXT
    )
    ''',
)


def _connect(path: str) -> sqlite3.Connection:
    # autocommit mode; callers issue BEGIN explicitly when they need a transaction
    conn = sqlite3.connect(path, timeout=30, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_db(path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a connection to the metadata store."""
    conn = _connect(path or METADATA_DB_PATH)
    try:
        yield conn
    finally:
        conn.close()


def connect_target(path: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the database whose elements are being deprecated."""
    return _connect(path or TARGET_DB_PATH)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """
    Run a block inside BEGIN IMMEDIATE ... COMMIT.

    Any exception rolls the whole block back and is re-raised. Once started the
    transaction either commits or rolls back; there is no partial commit.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def attach_metadata(conn: sqlite3.Connection, metadata_path: str) -> str:
    """
    Attach the metadata store to a target connection.

    Writes to both databases inside one transaction then commit atomically.

    Returns:
        Schema alias to use for metadata tables
    """
    attached = {row[1] for row in conn.execute("PRAGMA database_list")}
    if META_ALIAS not in attached:
        conn.execute(f"ATTACH DATABASE ? AS {META_ALIAS}", (metadata_path,))
    return META_ALIAS


def init_db(path: Optional[str] = None):
    """Initialize the metadata store with required tables."""
    path = path or METADATA_DB_PATH
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    with get_db(path) as conn:
        for statement in _SCHEMA:
            conn.execute(statement.format(s="main"))


def health_check(path: Optional[str] = None) -> bool:
    """Check metadata store health."""
    try:
        with get_db(path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = {row[0] for row in cursor.fetchall()}
            return all(table in table_names for table in METADATA_TABLES)
    except sqlite3.Error:
        return False


def quote_identifier(name: str) -> str:
    """Quote an SQLite identifier."""
    return '"' + name.replace('"', '""') + '"'
