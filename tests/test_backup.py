"""
Tests for backup creation, verification, restoration and retention.
"""

import json
import sqlite3
from functools import partial
from pathlib import Path

import pytest

from schema_sunset.core.backup import BackupScope, BackupValidator, BACKUP_FORMAT_HEADER
from schema_sunset.core.dao import DeprecationStore
from schema_sunset.core.db import connect_target
from schema_sunset.core.errors import BackupUnavailableError
from schema_sunset.core.schema import BackupStatus, Element, ElementKind


ARCHIVE = Element(ElementKind.TABLE, "orders_archive")
LEGACY_FLAG = Element(ElementKind.COLUMN, "legacy_flag", "orders")
TOTAL_INDEX = Element(ElementKind.INDEX, "idx_orders_total")


@pytest.fixture
def store(tmp_path):
    return DeprecationStore(str(tmp_path / "meta.db"))


def make_validator(store, target_db, tmp_path, clock, **kwargs):
    kwargs.setdefault("encrypt", False)
    return BackupValidator(store, partial(connect_target, target_db), backup_dir=str(tmp_path / "backups"),
                           clock=clock, **kwargs)


@pytest.fixture
def validator(store, target_db, tmp_path, clock):
    validator = make_validator(store, target_db, tmp_path, clock)
    yield validator
    validator.shutdown()


def scope(element, live_name=None, retention_days=7):
    return BackupScope(element=element, live_name=live_name or element.name, retention_days=retention_days)


class TestCreateBackup:
    """Test backup creation."""

    def test_table_backup_is_pending(self, validator, store, clock):
        record = validator.create_backup(scope(ARCHIVE))

        assert record.status == BackupStatus.PENDING
        assert record.row_count == 3
        assert record.element_key == ARCHIVE.key
        assert (record.expires_at - clock()).days == 7
        assert Path(record.location).exists()
        assert Path(record.location).with_name(f"{record.id}.manifest.json").exists()
        assert store.get_backup(record.id).status == BackupStatus.PENDING

    def test_backup_under_deprecated_name(self, validator, target_db):
        conn = sqlite3.connect(target_db)
        conn.execute('ALTER TABLE orders_archive RENAME TO orders_archive_deprecated_20250115_unu')
        conn.commit()
        conn.close()

        record = validator.create_backup(scope(ARCHIVE, "orders_archive_deprecated_20250115_unu"))
        assert record.row_count == 3

    def test_missing_element_raises(self, validator, tmp_path):
        with pytest.raises(BackupUnavailableError):
            validator.create_backup(scope(Element(ElementKind.TABLE, "missing")))
        assert not list((tmp_path / "backups").glob("*.backup"))

    def test_unencrypted_payload_readable(self, validator):
        record = validator.create_backup(scope(ARCHIVE))
        content = Path(record.location).read_bytes()

        assert content.startswith(BACKUP_FORMAT_HEADER)
        payload = json.loads(content[len(BACKUP_FORMAT_HEADER):])
        assert payload["columns"] == ["id", "order_ref", "archived_at"]

    def test_encrypted_payload_opaque(self, store, target_db, tmp_path, clock):
        validator = make_validator(store, target_db, tmp_path, clock, encrypt=True, master_password="s3cret")
        try:
            record = validator.create_backup(scope(ARCHIVE))
        finally:
            validator.shutdown()

        assert record.encrypted
        assert b"A-1" not in Path(record.location).read_bytes()

    def test_backup_with_deadline(self, validator):
        record = validator.create_backup_with_deadline(scope(ARCHIVE), timeout=30)
        assert record.row_count == 3


class TestVerifyBackup:
    """Test checksum and trial-restore verification."""

    @pytest.mark.parametrize("element", [ARCHIVE, LEGACY_FLAG, TOTAL_INDEX], ids=["table", "column", "index"])
    def test_verify_each_kind(self, validator, store, element):
        record = validator.create_backup(scope(element))

        assert validator.verify(record.id) == BackupStatus.VERIFIED
        stored = store.get_backup(record.id)
        assert stored.status == BackupStatus.VERIFIED
        assert stored.verified_at is not None

    def test_column_backup_covers_every_row(self, validator):
        record = validator.create_backup(scope(LEGACY_FLAG))
        assert record.row_count == 2

    def test_tampered_file_fails(self, validator, store):
        record = validator.create_backup(scope(ARCHIVE))
        path = Path(record.location)
        path.write_bytes(path.read_bytes().replace(b"A-1", b"B-1"))

        assert validator.verify(record.id) == BackupStatus.FAILED
        assert "Checksum mismatch" in store.get_backup(record.id).diagnostic

    def test_missing_file_fails(self, validator, store):
        record = validator.create_backup(scope(ARCHIVE))
        Path(record.location).unlink()

        assert validator.verify(record.id) == BackupStatus.FAILED
        assert "missing" in store.get_backup(record.id).diagnostic

    def test_encrypted_round_trip(self, store, target_db, tmp_path, clock):
        validator = make_validator(store, target_db, tmp_path, clock, encrypt=True, master_password="s3cret")
        try:
            record = validator.create_backup(scope(ARCHIVE))
            assert validator.verify(record.id) == BackupStatus.VERIFIED
        finally:
            validator.shutdown()

    def test_wrong_password_fails(self, store, target_db, tmp_path, clock):
        writer = make_validator(store, target_db, tmp_path, clock, encrypt=True, master_password="s3cret")
        reader = make_validator(store, target_db, tmp_path, clock, encrypt=True, master_password="other")
        try:
            record = writer.create_backup(scope(ARCHIVE))
            assert reader.verify(record.id) == BackupStatus.FAILED
        finally:
            writer.shutdown()
            reader.shutdown()

        assert "authentication tag mismatch" in store.get_backup(record.id).diagnostic

    def test_unknown_backup_raises(self, validator):
        with pytest.raises(BackupUnavailableError):
            validator.verify("bk_missing")


class TestRestorationStatements:
    """Test statements that recreate a backed-up element."""

    def test_requires_verified_backup(self, validator):
        record = validator.create_backup(scope(ARCHIVE))
        with pytest.raises(BackupUnavailableError, match="not verified"):
            validator.restoration_statements(record.id, "orders_archive")

    def test_restores_dropped_table(self, validator, target_db):
        record = validator.create_backup(scope(ARCHIVE))
        validator.verify(record.id)

        conn = sqlite3.connect(target_db)
        try:
            conn.execute("DROP TABLE orders_archive")
            for sql, params in validator.restoration_statements(record.id, "orders_archive"):
                conn.execute(sql, params)
            conn.commit()
            rows = conn.execute("SELECT order_ref FROM orders_archive ORDER BY id").fetchall()
        finally:
            conn.close()

        assert [r[0] for r in rows] == ["A-1", "A-2", "A-3"]

    def test_column_statements(self, validator):
        record = validator.create_backup(scope(LEGACY_FLAG))
        validator.verify(record.id)

        statements = validator.restoration_statements(record.id, "legacy_flag")
        assert statements[0][0] == 'ALTER TABLE "orders" ADD COLUMN "legacy_flag" INTEGER'
        assert ('UPDATE "orders" SET "legacy_flag" = ? WHERE rowid = ?', (1, 1)) in statements

    def test_index_retargeted(self, validator):
        record = validator.create_backup(scope(TOTAL_INDEX))
        validator.verify(record.id)

        [(sql, params)] = validator.restoration_statements(record.id, "idx_orders_total")
        assert sql == 'CREATE INDEX "idx_orders_total" ON orders(total)'


class TestRetention:
    """Test expiry of old backups."""

    def test_purge_expired(self, validator, store, clock):
        record = validator.create_backup(scope(ARCHIVE, retention_days=7))
        validator.verify(record.id)

        assert validator.purge_expired() == 0
        clock.advance(days=8)
        assert validator.purge_expired() == 1

        assert not Path(record.location).exists()
        assert store.get_backup(record.id).status == BackupStatus.EXPIRED
        assert validator.verify(record.id) == BackupStatus.FAILED
        assert validator.purge_expired() == 0
