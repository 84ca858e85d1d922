"""
Backup creation and verification gating destructive deprecation steps.

A backup holds the DDL and rows of one element, optionally encrypted with
AES-256-GCM. Verification compares the SHA-256 checksum and replays the backup
into a disposable in-memory database before the record is marked verified.
"""

import base64
import json
import os
import secrets
import hashlib
import sqlite3
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .catalog import retarget_ddl
from .config import (
    BACKUP_DIR,
    BACKUP_ENCRYPTION_ENABLED,
    BACKUP_MASTER_PASSWORD,
    BACKUP_TIMEOUT_SEC,
    BACKUP_TRIAL_RESTORE,
    MAX_CONCURRENT_DESTRUCTIVE_OPS,
)
from .dao import DeprecationStore
from .db import quote_identifier
from .errors import BackupUnavailableError
from .schema import BackupRecord, BackupStatus, Element, ElementKind

from util.logging import logger, audit_event

BACKUP_FORMAT_HEADER = b"SCHEMA_SUNSET_BACKUP_V1\n"

Statement = Tuple[str, Tuple[Any, ...]]


@dataclass
class BackupScope:
    """What to back up: one element under its current visible name."""
    element: Element
    live_name: str
    retention_days: int


class BackupError(Exception):
    """A backup file is missing, corrupt or unreadable."""


NONCE_BYTES = 12
KDF_ITERATIONS = 100000


def derive_backup_key(password: str, salt: bytes) -> bytes:
    """AES-256 key for one backup file; every file carries its own salt."""
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=KDF_ITERATIONS)
    return kdf.derive(password.encode("utf-8"))


def seal_payload(payload: bytes, key: bytes) -> bytes:
    nonce = os.urandom(NONCE_BYTES)
    # AESGCM appends the 16-byte tag to the ciphertext
    return nonce + AESGCM(key).encrypt(nonce, payload, BACKUP_FORMAT_HEADER)


def open_payload(sealed: bytes, key: bytes) -> bytes:
    if len(sealed) < NONCE_BYTES + 16:
        raise BackupError("Encrypted payload is truncated")
    try:
        return AESGCM(key).decrypt(sealed[:NONCE_BYTES], sealed[NONCE_BYTES:], BACKUP_FORMAT_HEADER)
    except InvalidTag:
        raise BackupError("Decryption failed: authentication tag mismatch (wrong password or altered file)")


def sha256_hex(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def _encode_value(value: Any) -> Any:
    if isinstance(value, bytes):
        return {"__bytes__": base64.b64encode(value).decode("ascii")}
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict) and "__bytes__" in value:
        return base64.b64decode(value["__bytes__"])
    return value


class BackupValidator:
    """Creates, verifies and retires element backups."""

    def __init__(self, store: DeprecationStore, connect: Callable[[], sqlite3.Connection],
                 backup_dir: str = BACKUP_DIR, encrypt: bool = BACKUP_ENCRYPTION_ENABLED,
                 trial_restore: bool = BACKUP_TRIAL_RESTORE, clock: Callable[[], datetime] = datetime.now,
                 master_password: str = BACKUP_MASTER_PASSWORD,
                 max_workers: int = MAX_CONCURRENT_DESTRUCTIVE_OPS):
        self.store = store
        self._connect = connect
        self.backup_dir = Path(backup_dir)
        self.encrypt = encrypt
        self.trial_restore = trial_restore
        self.clock = clock
        self._password = master_password
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="backup")

    def shutdown(self):
        self._executor.shutdown(wait=True)

    # Creation

    def create_backup(self, scope: BackupScope) -> BackupRecord:
        """
        Back up one element and record it as pending.

        Raises:
            BackupUnavailableError: if the element cannot be read or the file cannot be written
        """
        now = self.clock()
        backup_id = f"bk_{now:%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:8]}"
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        data_path = self.backup_dir / f"{backup_id}.backup"
        manifest_path = self.backup_dir / f"{backup_id}.manifest.json"

        try:
            payload = self._dump(scope)
            data = json.dumps(payload, sort_keys=True).encode("utf-8")

            salt = None
            if self.encrypt:
                salt = secrets.token_bytes(16)
                data = seal_payload(data, derive_backup_key(self._password, salt))

            content = BACKUP_FORMAT_HEADER + data
            checksum = sha256_hex(content)

            tmp_path = data_path.with_suffix(".tmp")
            tmp_path.write_bytes(content)
            os.replace(tmp_path, data_path)

            manifest = {
                "backup_id": backup_id,
                "element": scope.element.to_dict(),
                "live_name": scope.live_name,
                "created_at": now.isoformat(),
                "encrypted": self.encrypt,
                "salt": salt.hex() if salt else None,
                "checksum": checksum,
                "row_count": payload["row_count"],
                "version": "1.0.0",
            }
            manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")

        except (OSError, sqlite3.Error, BackupError) as e:
            for path in (data_path, manifest_path, data_path.with_suffix(".tmp")):
                if path.exists():
                    path.unlink()
            logger.log_backup_event(backup_id, "create", "failed", {"error": str(e)})
            raise BackupUnavailableError(f"Backup of {scope.element.key} failed: {e}")

        record = BackupRecord(
            id=backup_id,
            element_key=scope.element.key,
            created_at=now,
            checksum=checksum,
            status=BackupStatus.PENDING,
            location=str(data_path),
            expires_at=now + timedelta(days=scope.retention_days),
            encrypted=self.encrypt,
            row_count=payload["row_count"],
        )
        self.store.save_backup(record)

        logger.log_backup_event(backup_id, "create", "success", {
            "element": scope.element.key, "rows": record.row_count, "encrypted": self.encrypt
        })
        audit_event(
            event_type="backup_created",
            identifiers={"backup_id": backup_id, "element": scope.element.key},
            payload={"location": str(data_path), "row_count": record.row_count, "encrypted": self.encrypt}
        )
        return record

    def create_backup_async(self, scope: BackupScope) -> Future:
        """Start a backup on the bounded backup pool."""
        return self._executor.submit(self.create_backup, scope)

    def create_backup_with_deadline(self, scope: BackupScope, timeout: float = BACKUP_TIMEOUT_SEC) -> BackupRecord:
        """
        Create a backup, giving up after a deadline.

        Raises:
            BackupUnavailableError: on timeout or failure
        """
        future = self.create_backup_async(scope)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            future.cancel()
            raise BackupUnavailableError(
                f"Backup of {scope.element.key} did not finish within {timeout:.0f}s",
                remediation="Retry during a quieter period or raise BACKUP_TIMEOUT_SEC",
            )

    def _dump(self, scope: BackupScope) -> Dict[str, Any]:
        element = scope.element
        payload: Dict[str, Any] = {
            "format": 1,
            "element": element.to_dict(),
            "live_name": scope.live_name,
            "ddl": [],
            "columns": [],
            "column_definition": None,
            "rows": [],
            "row_count": 0,
        }

        conn = self._connect()
        try:
            # one read transaction for a consistent snapshot
            conn.execute("BEGIN")
            if element.kind == ElementKind.TABLE:
                row = conn.execute(
                    "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (scope.live_name,)
                ).fetchone()
                if not row:
                    raise BackupError(f"Table not found: {scope.live_name}")
                payload["ddl"] = [row[0]]
                payload["columns"] = [
                    c[1] for c in conn.execute(f"PRAGMA table_info({quote_identifier(scope.live_name)})")
                ]
                rows = conn.execute(f"SELECT * FROM {quote_identifier(scope.live_name)}").fetchall()
                payload["rows"] = [[_encode_value(v) for v in r] for r in rows]

            elif element.kind == ElementKind.COLUMN:
                definition = None
                for cid, name, col_type, notnull, default, pk in conn.execute(
                        f"PRAGMA table_info({quote_identifier(element.owner)})"):
                    if name == scope.live_name:
                        definition = {"type": col_type, "notnull": bool(notnull), "default": default}
                if definition is None:
                    raise BackupError(f"Column not found: {element.owner}.{scope.live_name}")
                payload["column_definition"] = definition
                rows = conn.execute(
                    f"SELECT rowid, {quote_identifier(scope.live_name)} FROM {quote_identifier(element.owner)}"
                ).fetchall()
                payload["rows"] = [[r[0], _encode_value(r[1])] for r in rows]

            else:
                row = conn.execute(
                    "SELECT sql FROM sqlite_master WHERE type = 'index' AND name = ?", (scope.live_name,)
                ).fetchone()
                if not row or not row[0]:
                    raise BackupError(f"Index not found: {scope.live_name}")
                payload["ddl"] = [row[0]]
            conn.execute("COMMIT")
        finally:
            conn.close()

        payload["row_count"] = len(payload["rows"])
        return payload

    # Verification

    def _load_payload(self, record: BackupRecord) -> Dict[str, Any]:
        path = Path(record.location)
        if not path.exists():
            raise BackupError(f"Backup file missing: {path}")

        content = path.read_bytes()
        actual = sha256_hex(content)
        if actual != record.checksum:
            raise BackupError(f"Checksum mismatch: expected {record.checksum[:12]}..., got {actual[:12]}...")

        if not content.startswith(BACKUP_FORMAT_HEADER):
            raise BackupError("Unrecognized backup file format")
        data = content[len(BACKUP_FORMAT_HEADER):]

        if record.encrypted:
            manifest_path = path.with_name(f"{record.id}.manifest.json")
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
                salt = bytes.fromhex(manifest["salt"])
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise BackupError(f"Backup manifest unreadable: {e}")
            data = open_payload(data, derive_backup_key(self._password, salt))

        try:
            payload = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise BackupError(f"Backup payload is corrupt: {e}")

        if payload.get("row_count") != len(payload.get("rows", [])):
            raise BackupError("Row count in payload does not match stored rows")
        return payload

    def verify(self, backup_id: str) -> BackupStatus:
        """
        Verify a backup by checksum and trial restoration.

        Returns:
            BackupStatus.VERIFIED or BackupStatus.FAILED

        Raises:
            BackupUnavailableError: if the backup record does not exist
        """
        record = self.store.get_backup(backup_id)
        if record is None:
            raise BackupUnavailableError(f"Backup not found: {backup_id}", remediation="Create a new backup")
        if record.status == BackupStatus.EXPIRED:
            return BackupStatus.FAILED

        diagnostic = ""
        try:
            payload = self._load_payload(record)
            if payload["row_count"] != record.row_count:
                raise BackupError(f"Row count mismatch: record {record.row_count}, payload {payload['row_count']}")
            if self.trial_restore:
                self._trial_restore(payload)
            status = BackupStatus.VERIFIED
        except BackupError as e:
            status, diagnostic = BackupStatus.FAILED, str(e)
        except sqlite3.Error as e:
            status, diagnostic = BackupStatus.FAILED, f"Trial restore failed: {e}"

        now = self.clock()
        updated = replace(
            record, status=status, diagnostic=diagnostic,
            verified_at=now if status == BackupStatus.VERIFIED else None,
        )
        self.store.save_backup(updated)

        logger.log_backup_event(backup_id, "verify", "success" if status == BackupStatus.VERIFIED else "failed",
                                {"diagnostic": diagnostic} if diagnostic else None)
        audit_event(
            event_type="backup_verified",
            identifiers={"backup_id": backup_id, "element": record.element_key},
            payload={"status": status.value, "diagnostic": diagnostic}
        )
        return status

    def _trial_restore(self, payload: Dict[str, Any]):
        element = Element.from_dict(payload["element"])
        if element.kind == ElementKind.INDEX:
            # index definitions carry no rows; checking the DDL parses is all that is feasible
            retarget_ddl(payload["ddl"][0], payload["live_name"])
            return

        scratch = sqlite3.connect(":memory:")
        try:
            if element.kind == ElementKind.COLUMN:
                scratch.execute(f"CREATE TABLE {quote_identifier(element.owner)} (_placeholder INTEGER)")
                scratch.executemany(
                    f"INSERT INTO {quote_identifier(element.owner)} (rowid) VALUES (?)",
                    [(r[0],) for r in payload["rows"]]
                )

            for sql, params in self._statements(payload, payload["live_name"]):
                scratch.execute(sql, params)

            if element.kind == ElementKind.TABLE:
                restored = scratch.execute(
                    f"SELECT COUNT(*) FROM {quote_identifier(payload['live_name'])}"
                ).fetchone()[0]
            elif element.kind == ElementKind.COLUMN:
                restored = scratch.execute(f"SELECT COUNT(*) FROM {quote_identifier(element.owner)}").fetchone()[0]
            else:
                restored = 0

            if restored != payload["row_count"]:
                raise BackupError(f"Trial restore produced {restored} rows, expected {payload['row_count']}")
        finally:
            scratch.close()

    # Restoration

    def _statements(self, payload: Dict[str, Any], target_name: str) -> List[Statement]:
        element = Element.from_dict(payload["element"])
        statements: List[Statement] = []

        if element.kind == ElementKind.TABLE:
            statements.append((retarget_ddl(payload["ddl"][0], target_name), ()))
            if payload["rows"]:
                cols = ", ".join(quote_identifier(c) for c in payload["columns"])
                marks = ", ".join("?" for _ in payload["columns"])
                insert = f"INSERT INTO {quote_identifier(target_name)} ({cols}) VALUES ({marks})"
                statements.extend((insert, tuple(_decode_value(v) for v in row)) for row in payload["rows"])

        elif element.kind == ElementKind.COLUMN:
            definition = payload["column_definition"]
            column_sql = f"{quote_identifier(target_name)} {definition['type'] or ''}".rstrip()
            if definition["default"] is not None:
                if definition["notnull"]:
                    column_sql += " NOT NULL"
                column_sql += f" DEFAULT {definition['default']}"
            table = quote_identifier(element.owner)
            statements.append((f"ALTER TABLE {table} ADD COLUMN {column_sql}", ()))
            update = f"UPDATE {table} SET {quote_identifier(target_name)} = ? WHERE rowid = ?"
            statements.extend((update, (_decode_value(value), rowid)) for rowid, value in payload["rows"])

        else:
            statements.append((retarget_ddl(payload["ddl"][0], target_name), ()))

        return statements

    def restoration_statements(self, backup_id: str, target_name: str) -> List[Statement]:
        """
        Statements that recreate the backed-up element under target_name.

        Raises:
            BackupUnavailableError: if the backup is missing, unverified or corrupt
        """
        record = self.store.get_backup(backup_id)
        if record is None:
            raise BackupUnavailableError(f"Backup not found: {backup_id}")
        if record.status != BackupStatus.VERIFIED:
            raise BackupUnavailableError(
                f"Backup {backup_id} is {record.status.value}, not verified",
                remediation="Verify the backup before restoring from it",
            )
        try:
            payload = self._load_payload(record)
        except BackupError as e:
            raise BackupUnavailableError(f"Backup {backup_id} cannot be read: {e}")
        return self._statements(payload, target_name)

    # Retention

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete backup files past their expiry and mark the records expired."""
        now = now or self.clock()
        purged = 0
        for record in self.store.list_backups():
            if record.status == BackupStatus.EXPIRED or now < record.expires_at:
                continue
            data_path = Path(record.location)
            for path in (data_path, data_path.with_name(f"{record.id}.manifest.json")):
                if path.exists():
                    path.unlink()
            self.store.save_backup(replace(record, status=BackupStatus.EXPIRED))
            logger.log_backup_event(record.id, "purge", "success", {"expired_at": record.expires_at.isoformat()})
            purged += 1
        return purged
