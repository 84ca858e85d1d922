"""
Persistence for deprecation metadata: records, approvals, safety history,
backups, access events, rollback scripts and the audit log.

Write methods accept an optional connection and schema alias so that they can
join a transaction opened on the target database with the metadata store attached.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .db import get_db, init_db, transaction
from .schema import (
    AccessEvent,
    ApprovalRecord,
    BackupRecord,
    BackupStatus,
    DeprecationRecord,
    Phase,
    RiskLevel,
    RollbackPlan,
    SafetyCheckResult,
    SafetyReport,
)


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class DuplicateActiveRecordError(Exception):
    """Another active record already exists for the element."""

    def __init__(self, existing: DeprecationRecord):
        super().__init__(f"Active deprecation {existing.id} already exists for {existing.element.key}")
        self.existing = existing


class DeprecationStore:
    """Metadata store backed by its own SQLite file."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        init_db(db_path)

    @contextmanager
    def _writer(self, conn: Optional[sqlite3.Connection], schema: str):
        if conn is not None:
            yield conn, schema
        else:
            with get_db(self.db_path) as own:
                with transaction(own):
                    yield own, "main"

    # Deprecation records

    def create_record(self, record: DeprecationRecord, now: datetime) -> DeprecationRecord:
        """
        Insert a new active record.

        Raises:
            DuplicateActiveRecordError: if the element already has an active record
        """
        try:
            with self._writer(None, "main") as (conn, s):
                conn.execute(
                    f'''INSERT INTO {s}.deprecation_records
                        (id, element_key, element_kind, element_owner, original_name, deprecated_name,
                         reason, created_by, environment, phase, risk_level, backup_id,
                         rollback_script_id, created_at, updated_at, body)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                    self._record_row(record) + (_ts(now), _ts(now), json.dumps(record.to_dict()))
                )
        except sqlite3.IntegrityError:
            existing = self.find_active_record(record.element.key)
            if existing is None:
                raise
            raise DuplicateActiveRecordError(existing)
        return record

    def save_record(self, record: DeprecationRecord, now: datetime,
                    conn: Optional[sqlite3.Connection] = None, schema: str = "main"):
        """Update an existing record."""
        with self._writer(conn, schema) as (c, s):
            cursor = c.execute(
                f'''UPDATE {s}.deprecation_records SET
                        element_key = ?, element_kind = ?, element_owner = ?, original_name = ?,
                        deprecated_name = ?, reason = ?, created_by = ?, environment = ?, phase = ?,
                        risk_level = ?, backup_id = ?, rollback_script_id = ?, updated_at = ?, body = ?
                    WHERE id = ?''',
                self._record_row(record)[1:] + (_ts(now), json.dumps(record.to_dict()), record.id)
            )
            if cursor.rowcount != 1:
                raise KeyError(f"Deprecation record not found: {record.id}")

    @staticmethod
    def _record_row(record: DeprecationRecord) -> Tuple:
        return (
            record.id,
            record.element.key,
            record.element.kind.value,
            record.element.owner,
            record.original_name,
            record.deprecated_name,
            record.reason.value,
            record.created_by,
            record.environment,
            record.phase.value,
            record.risk_level.value if record.risk_level else None,
            record.backup_id,
            record.rollback_script_id,
        )

    def get_record(self, deprecation_id: str, with_history: bool = True) -> Optional[DeprecationRecord]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT body FROM deprecation_records WHERE id = ?", (deprecation_id,)
            ).fetchone()
        if not row:
            return None
        record = DeprecationRecord.from_dict(json.loads(row[0]))
        if with_history:
            record.approvals = self.list_approvals(record.id)
            record.safety_attempts = self.list_safety_reports(record.id)
        return record

    def find_active_record(self, element_key: str) -> Optional[DeprecationRecord]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                '''SELECT id FROM deprecation_records
                   WHERE element_key = ? AND phase NOT IN ('phase2_complete', 'rolled_back')''',
                (element_key,)
            ).fetchone()
        return self.get_record(row[0]) if row else None

    def find_latest_record(self, element_key: str) -> Optional[DeprecationRecord]:
        """Active record for an element, or the most recently updated one."""
        active = self.find_active_record(element_key)
        if active:
            return active
        with get_db(self.db_path) as conn:
            row = conn.execute(
                '''SELECT id FROM deprecation_records WHERE element_key = ?
                   ORDER BY updated_at DESC LIMIT 1''',
                (element_key,)
            ).fetchone()
        return self.get_record(row[0]) if row else None

    def find_by_deprecated_name(self, name: str) -> Optional[DeprecationRecord]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                '''SELECT id FROM deprecation_records WHERE deprecated_name = ?
                   ORDER BY updated_at DESC LIMIT 1''',
                (name,)
            ).fetchone()
        return self.get_record(row[0]) if row else None

    def list_records(self, active_only: bool = False, phases: Optional[Iterable[Phase]] = None) -> List[DeprecationRecord]:
        query = "SELECT body FROM deprecation_records"
        params: List[Any] = []
        clauses = []
        if active_only:
            clauses.append("phase NOT IN ('phase2_complete', 'rolled_back')")
        if phases:
            phases = list(phases)
            clauses.append(f"phase IN ({','.join('?' * len(phases))})")
            params.extend(p.value for p in phases)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"

        with get_db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [DeprecationRecord.from_dict(json.loads(row[0])) for row in rows]

    # Approvals

    def save_approval(self, approval: ApprovalRecord):
        with self._writer(None, "main") as (conn, s):
            conn.execute(
                f'''INSERT INTO {s}.approval_records
                    (id, deprecation_id, approver, role, decision, justification, decided_at, invalidated)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
                (approval.id, approval.deprecation_id, approval.approver, approval.role,
                 approval.decision.value, approval.justification, _ts(approval.decided_at),
                 approval.invalidated)
            )

    def list_approvals(self, deprecation_id: str) -> List[ApprovalRecord]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                '''SELECT id, deprecation_id, approver, role, decision, justification, decided_at, invalidated
                   FROM approval_records WHERE deprecation_id = ? ORDER BY decided_at, rowid''',
                (deprecation_id,)
            ).fetchall()
        return [
            ApprovalRecord.from_dict({
                "id": r[0], "deprecation_id": r[1], "approver": r[2], "role": r[3],
                "decision": r[4], "justification": r[5] or "", "decided_at": r[6], "invalidated": r[7],
            })
            for r in rows
        ]

    def invalidate_approvals(self, deprecation_id: str,
                             conn: Optional[sqlite3.Connection] = None, schema: str = "main") -> int:
        with self._writer(conn, schema) as (c, s):
            cursor = c.execute(
                f"UPDATE {s}.approval_records SET invalidated = TRUE WHERE deprecation_id = ? AND NOT invalidated",
                (deprecation_id,)
            )
            return cursor.rowcount

    # Safety history

    def save_safety_report(self, deprecation_id: str, attempt_id: str, report: SafetyReport,
                           conn: Optional[sqlite3.Connection] = None, schema: str = "main"):
        with self._writer(conn, schema) as (c, s):
            c.executemany(
                f'''INSERT INTO {s}.safety_results
                    (deprecation_id, attempt_id, phase, risk_level, check_name, severity, passed,
                     message, remediation, details, ts)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                [
                    (deprecation_id, attempt_id, report.phase, report.risk_level.value, r.check_name,
                     r.severity.value, r.passed, r.message, r.remediation,
                     json.dumps(r.details, default=str), _ts(r.timestamp))
                    for r in report.results
                ]
            )

    def list_safety_reports(self, deprecation_id: str) -> List[SafetyReport]:
        """Safety check attempts in the order they were recorded."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                '''SELECT attempt_id, phase, risk_level, check_name, severity, passed, message,
                          remediation, details, ts
                   FROM safety_results WHERE deprecation_id = ? ORDER BY id''',
                (deprecation_id,)
            ).fetchall()

        reports: Dict[str, SafetyReport] = {}
        for attempt_id, phase, risk, name, severity, passed, message, remediation, details, ts in rows:
            result = SafetyCheckResult.from_dict({
                "check_name": name, "severity": severity, "passed": passed, "message": message,
                "timestamp": ts, "remediation": remediation or "",
                "details": json.loads(details) if details else {},
            })
            if attempt_id not in reports:
                reports[attempt_id] = SafetyReport(
                    element_key="", phase=phase, results=[], risk_level=RiskLevel(risk),
                    evaluated_at=result.timestamp,
                )
            reports[attempt_id].results.append(result)
        return list(reports.values())

    # Backups

    def save_backup(self, backup: BackupRecord):
        with self._writer(None, "main") as (conn, s):
            conn.execute(
                f'''INSERT OR REPLACE INTO {s}.backup_records
                    (id, element_key, created_at, checksum, status, location, expires_at,
                     encrypted, row_count, diagnostic, verified_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (backup.id, backup.element_key, _ts(backup.created_at), backup.checksum,
                 backup.status.value, backup.location, _ts(backup.expires_at), backup.encrypted,
                 backup.row_count, backup.diagnostic,
                 _ts(backup.verified_at) if backup.verified_at else None)
            )

    def get_backup(self, backup_id: str) -> Optional[BackupRecord]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                '''SELECT id, element_key, created_at, checksum, status, location, expires_at,
                          encrypted, row_count, diagnostic, verified_at
                   FROM backup_records WHERE id = ?''',
                (backup_id,)
            ).fetchone()
        return self._backup_from_row(row) if row else None

    def list_backups(self, status: Optional[BackupStatus] = None) -> List[BackupRecord]:
        query = '''SELECT id, element_key, created_at, checksum, status, location, expires_at,
                          encrypted, row_count, diagnostic, verified_at FROM backup_records'''
        params: Tuple = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        with get_db(self.db_path) as conn:
            rows = conn.execute(query + " ORDER BY created_at", params).fetchall()
        return [self._backup_from_row(row) for row in rows]

    def find_latest_backup(self, element_key: str) -> Optional[BackupRecord]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                '''SELECT id FROM backup_records WHERE element_key = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT 1''',
                (element_key,)
            ).fetchone()
        return self.get_backup(row[0]) if row else None

    @staticmethod
    def _backup_from_row(row) -> BackupRecord:
        keys = ("id", "element_key", "created_at", "checksum", "status", "location", "expires_at",
                "encrypted", "row_count", "diagnostic", "verified_at")
        data = dict(zip(keys, row))
        data["diagnostic"] = data["diagnostic"] or ""
        return BackupRecord.from_dict(data)

    # Access events

    def insert_access_events(self, events: List[AccessEvent]) -> int:
        with self._writer(None, "main") as (conn, s):
            conn.executemany(
                f'''INSERT INTO {s}.access_events
                    (element_key, operation, source, source_identifier, latency_ms, ts)
                    VALUES (?, ?, ?, ?, ?, ?)''',
                [
                    (e.element.key, e.operation.value, e.source.value, e.source_identifier,
                     e.latency_ms, _ts(e.timestamp))
                    for e in events
                ]
            )
        return len(events)

    def access_breakdown(self, element_key: str, since: datetime) -> List[Tuple[str, str, int, str]]:
        """
        Access counts for an element since a point in time, from raw events and daily aggregates.

        Both tables are read inside one transaction so a concurrent roll-up is never half visible.
        """
        since_ts = _ts(since)
        since_day = since_ts[:10]
        with get_db(self.db_path) as conn:
            with transaction(conn):
                raw = conn.execute(
                    '''SELECT source, operation, COUNT(*), MAX(ts) FROM access_events
                       WHERE element_key = ? AND ts >= ? GROUP BY source, operation''',
                    (element_key, since_ts)
                ).fetchall()
                daily = conn.execute(
                    '''SELECT source, operation, SUM(event_count), MAX(last_seen) FROM access_daily
                       WHERE element_key = ? AND day >= ? AND last_seen >= ? GROUP BY source, operation''',
                    (element_key, since_day, since_ts)
                ).fetchall()
        return list(raw) + list(daily)

    def average_latency(self, element_key: str, since: datetime) -> Optional[float]:
        """Mean latency of raw events since a point in time; rolled-up days carry no latency."""
        with get_db(self.db_path) as conn:
            row = conn.execute(
                '''SELECT AVG(latency_ms) FROM access_events
                   WHERE element_key = ? AND ts >= ? AND latency_ms IS NOT NULL''',
                (element_key, _ts(since))
            ).fetchone()
        return round(row[0], 2) if row and row[0] is not None else None

    def count_access_since(self, element_key: str, since: datetime,
                           conn: Optional[sqlite3.Connection] = None, schema: str = "main") -> int:
        """Raw events strictly after `since`. Pass conn to read inside an open transaction."""
        query = f"SELECT COUNT(*) FROM {schema}.access_events WHERE element_key = ? AND ts > ?"
        if conn is not None:
            return conn.execute(query, (element_key, _ts(since))).fetchone()[0]
        with get_db(self.db_path) as own:
            return own.execute(query, (element_key, _ts(since))).fetchone()[0]

    def roll_up_access_events(self, before: datetime) -> int:
        """Fold raw events older than `before` into daily aggregates and delete them."""
        before_ts = _ts(before)
        with self._writer(None, "main") as (conn, s):
            conn.execute(
                f'''INSERT INTO {s}.access_daily (element_key, day, source, operation, event_count, last_seen)
                    SELECT element_key, substr(ts, 1, 10), source, operation, COUNT(*), MAX(ts)
                    FROM {s}.access_events WHERE ts < ?
                    GROUP BY element_key, substr(ts, 1, 10), source, operation
                    ON CONFLICT(element_key, day, source, operation) DO UPDATE SET
                        event_count = event_count + excluded.event_count,
                        last_seen = MAX(last_seen, excluded.last_seen)''',
                (before_ts,)
            )
            cursor = conn.execute(f"DELETE FROM {s}.access_events WHERE ts < ?", (before_ts,))
            return cursor.rowcount

    # Rollback scripts

    def save_rollback_script(self, plan: RollbackPlan,
                             conn: Optional[sqlite3.Connection] = None, schema: str = "main"):
        with self._writer(conn, schema) as (c, s):
            c.execute(
                f'''INSERT INTO {s}.rollback_scripts (id, deprecation_id, mode, created_at, body)
                    VALUES (?, ?, ?, ?, ?)''',
                (plan.id, plan.deprecation_id, plan.mode, _ts(plan.created_at), json.dumps(plan.to_dict()))
            )

    def get_rollback_script(self, script_id: str) -> Optional[RollbackPlan]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT body FROM rollback_scripts WHERE id = ?", (script_id,)).fetchone()
        return RollbackPlan.from_dict(json.loads(row[0])) if row else None

    def list_rollback_scripts(self, deprecation_id: str) -> List[RollbackPlan]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT body FROM rollback_scripts WHERE deprecation_id = ? ORDER BY created_at, rowid",
                (deprecation_id,)
            ).fetchall()
        return [RollbackPlan.from_dict(json.loads(row[0])) for row in rows]

    # Audit trail

    def append_audit(self, deprecation_id: Optional[str], actor: str, action: str,
                     payload: Optional[Dict[str, Any]], now: datetime,
                     conn: Optional[sqlite3.Connection] = None, schema: str = "main"):
        with self._writer(conn, schema) as (c, s):
            c.execute(
                f"INSERT INTO {s}.audit_log (deprecation_id, ts, actor, action, payload) VALUES (?, ?, ?, ?, ?)",
                (deprecation_id, _ts(now), actor, action, json.dumps(payload or {}, default=str))
            )

    def list_audit(self, deprecation_id: str) -> List[Dict[str, Any]]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT ts, actor, action, payload FROM audit_log WHERE deprecation_id = ? ORDER BY id",
                (deprecation_id,)
            ).fetchall()
        return [
            {"ts": ts, "actor": actor, "action": action, "payload": json.loads(payload) if payload else {}}
            for ts, actor, action, payload in rows
        ]

    def integrity_check(self) -> str:
        with get_db(self.db_path) as conn:
            row = conn.execute("PRAGMA integrity_check").fetchone()
        return row[0] if row else "unknown"

    def count_rows(self, table: str) -> int:
        with get_db(self.db_path) as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
