"""
Maintenance reports for the metadata store and the target schema.

Integrity checks look at the metadata store itself; drift detection compares
what the records say the schema should look like with what the catalog shows.
"""

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .dao import DeprecationStore
from .db import METADATA_TABLES, get_db, health_check
from .errors import CatalogUnavailableError
from .naming import try_decode
from .schema import BackupStatus, Phase

from util.logging import logger


@dataclass
class MaintenanceReport:
    """Outcome of one maintenance pass; healthy means nothing needs a human."""
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    issues_found: int = 0
    actions_taken: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.issues_found == 0 and not self.errors

    def finish(self) -> "MaintenanceReport":
        self.completed_at = datetime.now()
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        data["healthy"] = self.healthy
        return data


def check_metadata_integrity(store: DeprecationStore) -> MaintenanceReport:
    """
    Check the metadata store: SQLite integrity, expected tables, dangling
    references and backup files that have gone missing.
    """
    report = MaintenanceReport(operation="metadata_integrity_check", started_at=datetime.now())

    db_path = Path(store.db_path)
    if not db_path.exists():
        report.errors.append(f"Metadata store not found: {store.db_path}")
        return report.finish()

    try:
        result = store.integrity_check()
        if result == "ok":
            report.metadata["integrity_status"] = "passed"
        else:
            report.issues_found += 1
            report.errors.append(f"Integrity check failed: {result}")
            report.recommendations.append("Restore the metadata store from a file-level copy")

        if not health_check(store.db_path):
            report.issues_found += 1
            report.errors.append("Metadata tables are missing")
            report.recommendations.append("Run init_db() against the metadata store")
            return report.finish()

        report.metadata["table_counts"] = {table: store.count_rows(table) for table in METADATA_TABLES}

        with get_db(store.db_path) as conn:
            orphan_approvals = conn.execute(
                '''SELECT COUNT(*) FROM approval_records a
                   LEFT JOIN deprecation_records d ON d.id = a.deprecation_id
                   WHERE d.id IS NULL'''
            ).fetchone()[0]
            dangling_backups = conn.execute(
                '''SELECT d.id, d.backup_id FROM deprecation_records d
                   LEFT JOIN backup_records b ON b.id = d.backup_id
                   WHERE d.backup_id IS NOT NULL AND b.id IS NULL'''
            ).fetchall()

        if orphan_approvals:
            report.issues_found += 1
            report.errors.append(f"{orphan_approvals} approval(s) reference missing deprecation records")
        for record_id, backup_id in dangling_backups:
            report.issues_found += 1
            report.errors.append(f"Record {record_id} references unknown backup {backup_id}")

        missing_files = [
            b.id for b in store.list_backups()
            if b.status in (BackupStatus.PENDING, BackupStatus.VERIFIED) and not Path(b.location).exists()
        ]
        if missing_files:
            report.issues_found += len(missing_files)
            report.errors.append(f"Backup files missing: {', '.join(missing_files)}")
            report.recommendations.append("Create new backups before running Phase 2 for affected records")

    except sqlite3.Error as e:
        report.errors.append(f"Metadata integrity check failed: {e}")

    report.finish()
    logger.log_operation("maintenance.metadata_integrity", "success" if report.healthy else "issues",
                         {"issues": report.issues_found, "errors": len(report.errors)})
    return report


def _expected_visible(record) -> Dict[str, bool]:
    """Names the schema should and should not contain for a record."""
    if record.phase == Phase.PROPOSED or record.phase == Phase.ROLLED_BACK:
        return {record.original_name: True}
    if record.phase == Phase.PHASE2_COMPLETE:
        return {record.original_name: False, record.deprecated_name: False}
    return {record.deprecated_name: True, record.original_name: False}


def detect_schema_drift(orchestrator) -> MaintenanceReport:
    """
    Compare deprecation records with the live catalog.

    Reports elements whose visible name does not match their phase, and
    deprecated names in the schema that no record accounts for.
    """
    report = MaintenanceReport(operation="schema_drift_detection", started_at=datetime.now())
    store = orchestrator.store
    catalog = orchestrator.catalog

    try:
        records = store.list_records()
        drifted = []
        for record in records:
            # rolled back proposals never touched the schema
            if record.phase == Phase.ROLLED_BACK and not record.deprecated_name:
                continue
            for name, should_exist in _expected_visible(record).items():
                if name is None:
                    continue
                exists = catalog.element_exists(record.element, name)
                if exists != should_exist:
                    state = "missing" if should_exist else "unexpectedly present"
                    drifted.append(f"{record.id} ({record.phase.value}): {record.element.kind.value} '{name}' {state}")

        tracked = {r.deprecated_name for r in records if r.deprecated_name}
        untracked = [name for name in catalog.list_names() if try_decode(name) and name not in tracked]

        report.metadata.update({
            "records_checked": len(records),
            "drifted": len(drifted),
            "untracked_deprecated_names": untracked,
        })
        if drifted:
            report.issues_found += len(drifted)
            report.errors.extend(drifted)
            report.recommendations.append("Inspect drifted elements; an out-of-band rename or drop has occurred")
        if untracked:
            report.issues_found += len(untracked)
            report.recommendations.append(
                f"{len(untracked)} deprecated name(s) have no record; plan them or rename them back"
            )

    except CatalogUnavailableError as e:
        report.errors.append(f"Schema drift detection failed: {e.message}")

    report.finish()
    logger.log_operation("maintenance.schema_drift", "success" if report.healthy else "issues",
                         {"issues": report.issues_found})
    return report


def run_maintenance(orchestrator) -> List[MaintenanceReport]:
    """Run every maintenance report."""
    return [check_metadata_integrity(orchestrator.store), detect_schema_drift(orchestrator)]
