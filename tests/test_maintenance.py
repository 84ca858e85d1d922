"""
Maintenance tests - metadata integrity and schema drift reports.
"""

import os
import sqlite3
from datetime import datetime

from schema_sunset.core.maintenance import (
    MaintenanceReport,
    check_metadata_integrity,
    detect_schema_drift,
    run_maintenance,
)


def deprecate(orchestrator, element):
    [planned] = orchestrator.plan([element], "unused", created_by="alice")
    result = orchestrator.execute_phase1(planned.record.id)
    assert result.success, result.to_dict()
    return result.record


class TestMaintenanceReport:

    def test_healthy_report(self):
        report = MaintenanceReport(operation="noop", started_at=datetime(2025, 1, 15))

        assert report.healthy
        data = report.to_dict()
        assert data["operation"] == "noop"
        assert data["completed_at"] is None
        assert data["healthy"]

    def test_errors_make_report_unhealthy(self):
        report = MaintenanceReport(operation="noop", started_at=datetime(2025, 1, 15), errors=["boom"])
        assert not report.healthy


class TestMetadataIntegrity:
    """Test checks on the metadata store."""

    def test_healthy_store(self, orchestrator):
        deprecate(orchestrator, "orders_archive")

        report = check_metadata_integrity(orchestrator.store)

        assert report.healthy, report.to_dict()
        assert report.metadata["integrity_status"] == "passed"
        assert report.metadata["table_counts"]["deprecation_records"] == 1

    def test_missing_backup_file(self, orchestrator):
        record = deprecate(orchestrator, "orders_archive")
        backup = orchestrator.store.get_backup(record.backup_id)
        os.remove(backup.location)

        report = check_metadata_integrity(orchestrator.store)

        assert report.issues_found == 1
        assert backup.id in report.errors[0]

    def test_missing_store(self, tmp_path):
        class Missing:
            db_path = str(tmp_path / "nowhere.db")

        report = check_metadata_integrity(Missing())
        assert not report.healthy
        assert "not found" in report.errors[0]


class TestSchemaDrift:
    """Test comparison of records with the live catalog."""

    def test_no_drift(self, orchestrator):
        deprecate(orchestrator, "scratch")
        orchestrator.plan(["orders_archive"], "unused")

        report = detect_schema_drift(orchestrator)

        assert report.healthy, report.to_dict()
        assert report.metadata["records_checked"] == 2

    def test_out_of_band_rename(self, orchestrator, target_db):
        record = deprecate(orchestrator, "scratch")
        conn = sqlite3.connect(target_db)
        try:
            conn.execute(f'ALTER TABLE "{record.deprecated_name}" RENAME TO scratch')
            conn.commit()
        finally:
            conn.close()

        report = detect_schema_drift(orchestrator)

        assert report.metadata["drifted"] == 2
        assert any("missing" in error for error in report.errors)
        assert any("unexpectedly present" in error for error in report.errors)

    def test_untracked_deprecated_name(self, orchestrator, target_db):
        conn = sqlite3.connect(target_db)
        try:
            conn.execute("CREATE TABLE legacy_deprecated_20240301_unu (id INTEGER)")
            conn.commit()
        finally:
            conn.close()

        report = detect_schema_drift(orchestrator)

        assert report.metadata["untracked_deprecated_names"] == ["legacy_deprecated_20240301_unu"]
        assert report.issues_found == 1


def test_run_maintenance(orchestrator):
    reports = run_maintenance(orchestrator)
    assert [r.operation for r in reports] == ["metadata_integrity_check", "schema_drift_detection"]
