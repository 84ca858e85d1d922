"""
Shared fixtures: a controllable clock, a seeded target database and a fully
wired orchestrator on temporary files.
"""

import sqlite3
from datetime import datetime, timedelta

import pytest

from schema_sunset.core.config import REFERENCE_POLICIES
from schema_sunset.core.service import build_orchestrator, shutdown


class FakeClock:
    """Clock shared by every component; tests move it forward explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


TARGET_SCHEMA = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL
);
CREATE TABLE orders (
    id INTEGER PRIMARY KEY,
    user_id INTEGER REFERENCES users(id),
    total REAL,
    legacy_flag INTEGER
);
CREATE TABLE orders_archive (
    id INTEGER PRIMARY KEY,
    order_ref TEXT,
    archived_at TEXT
);
CREATE INDEX idx_orders_archive_ref ON orders_archive(order_ref);
CREATE INDEX idx_orders_total ON orders(total);
CREATE TABLE scratch (id INTEGER PRIMARY KEY, note TEXT);

INSERT INTO users (id, email) VALUES (1, 'a@example.com'), (2, 'b@example.com');
INSERT INTO orders (id, user_id, total, legacy_flag) VALUES (1, 1, 10.5, 1), (2, 2, 99.0, NULL);
INSERT INTO orders_archive (id, order_ref, archived_at) VALUES
    (1, 'A-1', '2023-01-01'), (2, 'A-2', '2023-02-01'), (3, 'A-3', '2023-03-01');
"""

CHAIN_SCHEMA = """
CREATE TABLE a (id INTEGER PRIMARY KEY, v TEXT);
CREATE VIEW b AS SELECT id, v FROM a;
CREATE VIEW c AS SELECT id FROM b WHERE v IS NOT NULL;
"""

DIAMOND_SCHEMA = """
CREATE TABLE base (id INTEGER PRIMARY KEY, kind TEXT);
CREATE VIEW left_view AS SELECT id FROM base WHERE kind = 'l';
CREATE VIEW right_view AS SELECT id FROM base WHERE kind = 'r';
CREATE VIEW joined AS SELECT l.id FROM left_view l JOIN right_view r ON l.id = r.id;
"""

SELF_REF_SCHEMA = """
CREATE TABLE employees (id INTEGER PRIMARY KEY, manager_id INTEGER REFERENCES employees(id));
"""


def create_target(path, script: str = TARGET_SCHEMA):
    conn = sqlite3.connect(path)
    try:
        conn.executescript(script)
        conn.commit()
    finally:
        conn.close()
    return str(path)


def table_names(path):
    conn = sqlite3.connect(path)
    try:
        return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
    finally:
        conn.close()


def object_names(path):
    conn = sqlite3.connect(path)
    try:
        return {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
    finally:
        conn.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 15, 10, 0, 0))


@pytest.fixture
def target_db(tmp_path):
    return create_target(tmp_path / "app.db")


@pytest.fixture
def metadata_db(tmp_path):
    return str(tmp_path / "meta" / "deprecation_meta.db")


@pytest.fixture
def orchestrator(tmp_path, target_db, metadata_db, clock):
    orch = build_orchestrator(
        target_path=target_db,
        metadata_path=metadata_db,
        backup_dir=str(tmp_path / "backups"),
        policies=REFERENCE_POLICIES,
        environment="development",
        encrypt_backups=False,
        clock=clock,
        lock_timeout=5,
    )
    yield orch
    shutdown(orch)
