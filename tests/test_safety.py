"""
Tests for the safety check engine.
"""

import logging
import sqlite3
import threading
import time
from datetime import timedelta
from functools import partial

import pytest

from schema_sunset.core.catalog import CatalogReader
from schema_sunset.core.config import REFERENCE_POLICIES
from schema_sunset.core.dao import DeprecationStore
from schema_sunset.core.db import connect_target
from schema_sunset.core.monitor import AccessMonitor
from schema_sunset.core.safety import SafetyCheckEngine, SafetyContext, make_row_counter
from schema_sunset.core.schema import (
    BackupRecord,
    BackupStatus,
    Dependent,
    DependencyKind,
    Element,
    ElementKind,
    RiskLevel,
    SafetyCheckResult,
    Severity,
)

from conftest import DIAMOND_SCHEMA, SELF_REF_SCHEMA, create_target

DEV = REFERENCE_POLICIES["development"]


@pytest.fixture
def store(tmp_path):
    return DeprecationStore(str(tmp_path / "meta.db"))


@pytest.fixture
def monitor(store, clock):
    return AccessMonitor(store, clock=clock)


def make_engine(target_path, monitor, clock, **kwargs):
    connect = partial(connect_target, target_path)
    kwargs.setdefault("core_elements", ())
    return SafetyCheckEngine(
        CatalogReader(connect, retry_backoff=0), monitor, make_row_counter(connect), clock=clock, **kwargs
    )


@pytest.fixture
def engine(target_db, monitor, clock):
    engine = make_engine(target_db, monitor, clock)
    yield engine
    engine.shutdown()


def verified_backup(element, now, age=timedelta(hours=1)):
    return BackupRecord(
        id="bk-1", element_key=element.key, created_at=now - age, checksum="0" * 64,
        status=BackupStatus.VERIFIED, location="/tmp/bk-1.json", expires_at=now + timedelta(days=7),
        row_count=3, verified_at=now - age,
    )


def by_name(report):
    return {r.check_name: r for r in report.results}


class TestPhaseOneChecks:
    """Test the checks guarding the rename."""

    def test_empty_table_passes_without_backup(self, engine):
        report = engine.run_checks(Element(ElementKind.TABLE, "scratch"), 1, SafetyContext(policy=DEV))

        assert report.passed
        assert [r.check_name for r in report.results] == [
            "element-eligibility", "dependency", "data-integrity", "backup-freshness"
        ]

    def test_table_with_rows_needs_verified_backup(self, engine):
        report = engine.run_checks(Element(ElementKind.TABLE, "orders_archive"), 1, SafetyContext(policy=DEV))

        assert not report.passed
        failed = {r.check_name for r in report.critical_failures}
        assert failed == {"data-integrity", "backup-freshness"}
        assert by_name(report)["data-integrity"].details["rows"] == 3

    def test_table_with_rows_and_backup_passes(self, engine, clock):
        element = Element(ElementKind.TABLE, "orders_archive")
        context = SafetyContext(policy=DEV, backup=verified_backup(element, clock()))
        report = engine.run_checks(element, 1, context)

        assert report.passed
        assert "idx_orders_archive_ref" in by_name(report)["dependency"].details["owned"]

    def test_stale_backup_rejected(self, engine, clock):
        element = Element(ElementKind.TABLE, "orders_archive")
        context = SafetyContext(policy=DEV, backup=verified_backup(element, clock(), age=timedelta(hours=30)))
        report = engine.run_checks(element, 1, context)

        assert not by_name(report)["data-integrity"].passed

    def test_pending_backup_rejected(self, engine, clock):
        element = Element(ElementKind.TABLE, "orders_archive")
        backup = verified_backup(element, clock())
        backup.status = BackupStatus.PENDING
        report = engine.run_checks(element, 1, SafetyContext(policy=DEV, backup=backup))

        freshness = by_name(report)["backup-freshness"]
        assert not freshness.passed
        assert "verify-backup bk-1" in freshness.remediation

    def test_index_needs_no_backup(self, engine):
        report = engine.run_checks(Element(ElementKind.INDEX, "idx_orders_total"), 1, SafetyContext(policy=DEV))
        assert report.passed

    def test_missing_element(self, engine):
        report = engine.run_checks(Element(ElementKind.TABLE, "missing"), 1, SafetyContext(policy=DEV))

        eligibility = by_name(report)["element-eligibility"]
        assert not eligibility.passed
        assert "does not exist" in eligibility.message

    def test_core_element_is_critical(self, target_db, monitor, clock):
        engine = make_engine(target_db, monitor, clock, core_elements=("scratch",))
        try:
            report = engine.run_checks(Element(ElementKind.TABLE, "scratch"), 1, SafetyContext(policy=DEV))
        finally:
            engine.shutdown()

        assert not report.passed
        assert report.risk_level == RiskLevel.CRITICAL
        assert by_name(report)["element-eligibility"].details["core"]

    def test_system_tables_are_core(self, engine):
        assert engine.is_core_element(Element(ElementKind.TABLE, "sqlite_sequence"))
        assert engine.is_core_element(Element(ElementKind.TABLE, "deprecation_records"))
        assert not engine.is_core_element(Element(ElementKind.TABLE, "orders"))

    def test_foreign_key_blocks(self, engine):
        report = engine.run_checks(Element(ElementKind.TABLE, "users"), 1, SafetyContext(policy=DEV))

        dependency = by_name(report)["dependency"]
        assert not dependency.passed
        assert "fk orders(user_id)" in dependency.message
        assert report.risk_level == RiskLevel.CRITICAL


class TestPhaseTwoChecks:
    """Test the checks guarding the removal."""

    def test_access_history_only_in_phase_two(self, engine, clock):
        element = Element(ElementKind.TABLE, "scratch")
        phase1 = engine.run_checks(element, 1, SafetyContext(policy=DEV))
        phase2 = engine.run_checks(element, 2, SafetyContext(policy=DEV, backup=verified_backup(element, clock())))

        assert "access-history" not in by_name(phase1)
        assert by_name(phase2)["access-history"].passed
        assert phase2.passed

    def test_application_access_blocks(self, engine, monitor, clock):
        element = Element(ElementKind.TABLE, "scratch")
        monitor.record_access(element, "read", "application", timestamp=clock() - timedelta(days=1))
        monitor.flush()

        report = engine.run_checks(element, 2, SafetyContext(policy=DEV, backup=verified_backup(element, clock())))

        access = by_name(report)["access-history"]
        assert not access.passed
        assert access.severity == Severity.CRITICAL
        assert access.details["total_events"] == 1

    def test_maintenance_access_only_warns(self, engine, monitor, clock):
        element = Element(ElementKind.TABLE, "scratch")
        monitor.record_access(element, "write", "migration", timestamp=clock() - timedelta(days=2))
        monitor.record_access(element, "read", "admin", timestamp=clock() - timedelta(days=1))
        monitor.flush()

        report = engine.run_checks(element, 2, SafetyContext(policy=DEV, backup=verified_backup(element, clock())))

        access = by_name(report)["access-history"]
        assert access.passed
        assert access.severity == Severity.WARNING
        assert report.passed

    def test_access_outside_window_ignored(self, engine, monitor, clock):
        element = Element(ElementKind.TABLE, "scratch")
        monitor.record_access(element, "read", "application", timestamp=clock() - timedelta(days=10))
        monitor.flush()

        report = engine.run_checks(element, 2, SafetyContext(policy=DEV, backup=verified_backup(element, clock())))
        assert by_name(report)["access-history"].passed

    def test_backup_must_follow_latest_approval(self, engine, clock):
        element = Element(ElementKind.TABLE, "scratch")
        context = SafetyContext(policy=DEV, backup=verified_backup(element, clock()),
                                backup_not_before=clock() - timedelta(minutes=10))
        report = engine.run_checks(element, 2, context)

        freshness = by_name(report)["backup-freshness"]
        assert not freshness.passed
        assert "predates the latest approval" in freshness.message

    def test_phase_two_needs_backup_even_when_empty(self, engine):
        report = engine.run_checks(Element(ElementKind.TABLE, "scratch"), 2, SafetyContext(policy=DEV))
        assert not by_name(report)["backup-freshness"].passed

    def test_diamond_dependents_block(self, tmp_path, monitor, clock):
        path = create_target(tmp_path / "diamond.db", DIAMOND_SCHEMA)
        engine = make_engine(path, monitor, clock)
        element = Element(ElementKind.TABLE, "base")
        try:
            report = engine.run_checks(element, 2, SafetyContext(policy=DEV, backup=verified_backup(element, clock())))
        finally:
            engine.shutdown()

        assert not report.passed
        assert len(report.dependents) == 3
        assert "3 active dependent(s)" in by_name(report)["dependency"].message

    def test_self_reference_blocks(self, tmp_path, monitor, clock):
        path = create_target(tmp_path / "self.db", SELF_REF_SCHEMA)
        engine = make_engine(path, monitor, clock)
        element = Element(ElementKind.TABLE, "employees")
        try:
            report = engine.run_checks(element, 2, SafetyContext(policy=DEV, backup=verified_backup(element, clock())))
        finally:
            engine.shutdown()

        assert not by_name(report)["dependency"].passed
        assert report.risk_level == RiskLevel.CRITICAL


class TestFailureHandling:
    """Test that the engine fails closed."""

    def test_catalog_outage_short_circuits(self, monitor, clock):
        def broken():
            raise sqlite3.OperationalError("unable to open database file")

        engine = SafetyCheckEngine(CatalogReader(broken, retry_backoff=0), monitor, lambda e, n: 0,
                                   core_elements=(), clock=clock)
        try:
            report = engine.run_checks(Element(ElementKind.TABLE, "orders"), 1, SafetyContext(policy=DEV))
        finally:
            engine.shutdown()

        assert len(report.results) == 1
        assert report.results[0].check_name == "element-eligibility"
        assert report.results[0].message.startswith("Catalog unavailable")
        assert not report.passed

    def test_slow_check_times_out(self, target_db, monitor, clock):
        release = threading.Event()

        def slow_counter(element, live_name):
            release.wait(2)
            return 0

        connect = partial(connect_target, target_db)
        engine = SafetyCheckEngine(CatalogReader(connect, retry_backoff=0), monitor, slow_counter,
                                   core_elements=(), check_timeout=0.05, clock=clock)
        try:
            report = engine.run_checks(Element(ElementKind.TABLE, "scratch"), 1, SafetyContext(policy=DEV))
        finally:
            release.set()
            engine.shutdown()

        integrity = by_name(report)["data-integrity"]
        assert not integrity.passed
        assert integrity.severity == Severity.CRITICAL
        assert integrity.details["timeout_sec"] == 0.05
        assert not report.passed

    def test_overrunning_check_holds_worker_until_it_returns(self, target_db, monitor, clock, caplog):
        release = threading.Event()
        finished = threading.Event()

        def slow_counter(element, live_name):
            release.wait(2)
            finished.set()
            return 0

        connect = partial(connect_target, target_db)
        engine = SafetyCheckEngine(CatalogReader(connect, retry_backoff=0), monitor, slow_counter,
                                   core_elements=(), check_timeout=0.05, max_workers=1, clock=clock)
        try:
            with caplog.at_level(logging.WARNING):
                report = engine.run_checks(Element(ElementKind.TABLE, "scratch"), 1, SafetyContext(policy=DEV))

            assert engine.stuck_workers == 1
            assert by_name(report)["data-integrity"].details["stuck_workers"] == 1
            assert any("1/1 stuck" in r.getMessage() for r in caplog.records)

            release.set()
            assert finished.wait(2)
            deadline = time.time() + 2
            while engine.stuck_workers and time.time() < deadline:
                time.sleep(0.01)
            assert engine.stuck_workers == 0
        finally:
            release.set()
            engine.shutdown()

    def test_raising_check_counts_as_failure(self, target_db, monitor, clock):
        def exploding_counter(element, live_name):
            raise RuntimeError("boom")

        connect = partial(connect_target, target_db)
        engine = SafetyCheckEngine(CatalogReader(connect, retry_backoff=0), monitor, exploding_counter,
                                   core_elements=(), clock=clock)
        try:
            report = engine.run_checks(Element(ElementKind.TABLE, "scratch"), 1, SafetyContext(policy=DEV))
        finally:
            engine.shutdown()

        assert "boom" in by_name(report)["data-integrity"].message
        assert not report.passed


class TestRiskClassification:
    """Test risk levels."""

    def owned_index(self, n=1):
        return [Dependent(name=f"idx_{i}", kind=DependencyKind.INDEX, depends_on="t", owned=True)
                for i in range(n)]

    def test_old_index_is_low(self, engine):
        risk = engine.classify_risk(Element(ElementKind.INDEX, "idx_orders_total"), [], 100, [])
        assert risk == RiskLevel.LOW

    def test_old_table_with_few_dependents_is_medium(self, engine):
        risk = engine.classify_risk(Element(ElementKind.TABLE, "orders_archive"), self.owned_index(), 70, [])
        assert risk == RiskLevel.MEDIUM

    def test_new_table_with_many_dependents_is_high(self, engine):
        risk = engine.classify_risk(Element(ElementKind.TABLE, "orders_archive"), self.owned_index(3), 10, [])
        assert risk == RiskLevel.HIGH

    def test_active_external_dependent_is_critical(self, engine):
        fk = Dependent(name="orders(user_id)", kind=DependencyKind.FOREIGN_KEY, depends_on="users", owner="orders")
        assert engine.classify_risk(Element(ElementKind.TABLE, "users"), [fk], 100, []) == RiskLevel.CRITICAL

    def test_warning_raises_floor(self, engine, clock):
        warning = SafetyCheckResult(check_name="access-history", severity=Severity.WARNING, passed=False,
                                    message="maintenance access", timestamp=clock())
        risk = engine.classify_risk(Element(ElementKind.INDEX, "idx_orders_total"), [], 100, [warning])
        assert risk == RiskLevel.MEDIUM
