"""
Tests for access monitoring.
"""

import sqlite3
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from schema_sunset.core.dao import DeprecationStore
from schema_sunset.core.monitor import AccessMonitor, query_operation
from schema_sunset.core.schema import AccessOperation, AccessSource, Element, ElementKind

ARCHIVE = Element(ElementKind.TABLE, "orders_archive")
LEGACY_FLAG = Element(ElementKind.COLUMN, "legacy_flag", "orders")


@pytest.fixture
def store(tmp_path):
    return DeprecationStore(str(tmp_path / "meta.db"))


@pytest.fixture
def monitor(store, clock):
    monitor = AccessMonitor(store, clock=clock)
    yield monitor
    monitor.stop(timeout=1)


class TestRecording:
    """Test event recording and flushing."""

    def test_record_and_flush(self, monitor, store):
        monitor.record_access(ARCHIVE, "read", "application", latency_ms=2.5, source_identifier="billing-svc")
        monitor.record_access(ARCHIVE, "write", AccessSource.MIGRATION)

        assert store.count_rows("access_events") == 0
        assert monitor.flush() == 2
        assert store.count_rows("access_events") == 2
        assert monitor.recorded == 2

    def test_invalid_event_is_dropped_not_raised(self, monitor):
        monitor.record_access(ARCHIVE, "delete", "application")

        assert monitor.dropped == 1
        assert monitor.recorded == 0

    def test_full_queue_drops(self, store, clock):
        monitor = AccessMonitor(store, queue_max=1, clock=clock)
        monitor.record_access(ARCHIVE, "read")
        monitor.record_access(ARCHIVE, "read")

        assert monitor.recorded == 1
        assert monitor.dropped == 1

    def test_storage_failure_drops_batch(self, monitor, store):
        monitor.record_access(ARCHIVE, "read")
        monitor.record_access(ARCHIVE, "read")

        with patch.object(store, "insert_access_events", side_effect=sqlite3.OperationalError("disk I/O error")):
            assert monitor.flush() == 0

        assert monitor.dropped == 2
        assert monitor.flush() == 0

    def test_background_flusher(self, store, clock):
        monitor = AccessMonitor(store, flush_interval=0.05, batch_size=1, clock=clock)
        monitor.start()
        try:
            monitor.record_access(ARCHIVE, "read", "application")
            deadline = time.time() + 2
            while store.count_rows("access_events") == 0 and time.time() < deadline:
                time.sleep(0.02)
        finally:
            monitor.stop(timeout=1)

        assert store.count_rows("access_events") == 1

    def test_stop_flushes_remaining(self, store, clock):
        monitor = AccessMonitor(store, flush_interval=60, clock=clock)
        monitor.start()
        monitor.record_access(ARCHIVE, "read")
        monitor.stop(timeout=1)

        assert store.count_rows("access_events") == 1


class TestWatchedNames:
    """Test recording by visible name."""

    def test_table_name_case_insensitive(self, monitor):
        monitor.watch(ARCHIVE, "orders_archive_deprecated_20250115_unu")

        assert monitor.record_name_access("ORDERS_ARCHIVE_deprecated_20250115_unu", "read")
        assert not monitor.record_name_access("orders", "read")
        assert monitor.recorded == 1

    def test_column_needs_owner(self, monitor):
        monitor.watch(LEGACY_FLAG, "legacy_flag_deprecated_20250115_unu")

        assert monitor.record_name_access("legacy_flag_deprecated_20250115_unu", "read", owner="orders")
        assert not monitor.record_name_access("legacy_flag_deprecated_20250115_unu", "read")

    def test_unwatch(self, monitor):
        monitor.watch(ARCHIVE, "orders_archive_deprecated_20250115_unu")
        assert monitor.watched() == [ARCHIVE]

        monitor.unwatch(ARCHIVE)
        assert monitor.watched() == []
        assert not monitor.record_name_access("orders_archive_deprecated_20250115_unu", "read")


class TestQueryInterception:
    """Test recording from SQL text."""

    @pytest.mark.parametrize("sql,operation", [
        ("SELECT * FROM t", AccessOperation.READ),
        ("  with x AS (SELECT 1) SELECT * FROM x", AccessOperation.READ),
        ("(SELECT 1)", AccessOperation.READ),
        ("INSERT INTO t VALUES (1)", AccessOperation.WRITE),
        ("update t SET a = 1", AccessOperation.WRITE),
        ("DELETE FROM t", AccessOperation.WRITE),
    ])
    def test_operation_from_verb(self, sql, operation):
        assert query_operation(sql) == operation

    def test_table_in_query(self, monitor, store):
        monitor.watch(ARCHIVE, "orders_archive_deprecated_20250115_unu")

        hits = monitor.intercept_query(
            'DELETE FROM "Orders_Archive_deprecated_20250115_unu" WHERE id = 1', "application", latency_ms=4.0
        )
        monitor.flush()

        assert hits == ["table:orders_archive"]
        stats = monitor.get_stats(ARCHIVE, timedelta(days=1))
        assert stats.by_operation == {"write": 1}
        assert stats.by_source == {"application": 1}

    def test_column_needs_its_table(self, monitor):
        monitor.watch(LEGACY_FLAG, "legacy_flag_deprecated_20250115_unu")

        assert monitor.intercept_query("SELECT legacy_flag_deprecated_20250115_unu FROM orders") == [
            "column:orders.legacy_flag"
        ]
        assert monitor.intercept_query("SELECT legacy_flag_deprecated_20250115_unu FROM invoices") == []
        assert monitor.recorded == 1

    def test_unwatched_query_records_nothing(self, monitor):
        monitor.watch(ARCHIVE, "orders_archive_deprecated_20250115_unu")

        assert monitor.intercept_query("SELECT * FROM orders_archive") == []
        assert monitor.intercept_query("") == []
        assert monitor.recorded == 0


class TestStats:
    """Test aggregation over windows."""

    def test_stats_within_window(self, monitor, clock):
        now = clock()
        monitor.record_access(ARCHIVE, "read", "application", timestamp=now - timedelta(days=1))
        monitor.record_access(ARCHIVE, "write", "migration", timestamp=now - timedelta(days=2))
        monitor.record_access(ARCHIVE, "read", "application", timestamp=now - timedelta(days=20))
        monitor.record_access(LEGACY_FLAG, "read", "application", timestamp=now - timedelta(days=1))
        monitor.flush()

        stats = monitor.get_stats(ARCHIVE, timedelta(days=7))

        assert stats.total_events == 2
        assert stats.by_source == {"application": 1, "migration": 1}
        assert stats.by_operation == {"read": 1, "write": 1}
        assert stats.last_seen == now - timedelta(days=1)
        assert not stats.only_maintenance_sources

    def test_no_events(self, monitor):
        stats = monitor.get_stats(ARCHIVE, timedelta(days=7))

        assert stats.total_events == 0
        assert stats.to_dict()["last_seen"] == "never"

    def test_events_since_is_strict(self, monitor, clock):
        now = clock()
        monitor.record_access(ARCHIVE, "read", timestamp=now)
        monitor.record_access(ARCHIVE, "read", timestamp=now + timedelta(seconds=1))
        monitor.flush()

        assert monitor.events_since(ARCHIVE, now) == 1

    def test_roll_up_keeps_counts(self, monitor, store, clock):
        now = clock()
        monitor.record_access(ARCHIVE, "read", "application", timestamp=now - timedelta(days=100))
        monitor.record_access(ARCHIVE, "read", "application", timestamp=now - timedelta(days=100, hours=1))
        monitor.record_access(ARCHIVE, "read", "application", timestamp=now - timedelta(days=1))
        monitor.flush()

        assert monitor.roll_up() == 2
        assert store.count_rows("access_events") == 1
        assert store.count_rows("access_daily") == 1

        stats = monitor.get_stats(ARCHIVE, timedelta(days=120))
        assert stats.total_events == 3
        assert monitor.get_stats(ARCHIVE, timedelta(days=7)).total_events == 1

    def test_average_latency(self, monitor, clock):
        now = clock()
        monitor.record_access(ARCHIVE, "read", latency_ms=2.0, timestamp=now - timedelta(hours=1))
        monitor.record_access(ARCHIVE, "read", latency_ms=5.0, timestamp=now - timedelta(hours=2))
        monitor.record_access(ARCHIVE, "read", timestamp=now - timedelta(hours=3))
        monitor.record_access(ARCHIVE, "read", latency_ms=100.0, timestamp=now - timedelta(days=30))
        monitor.flush()

        stats = monitor.get_stats(ARCHIVE, timedelta(days=7))

        assert stats.total_events == 3
        assert stats.average_latency_ms == 3.5
        assert stats.to_dict()["average_latency_ms"] == 3.5
        assert monitor.get_stats(LEGACY_FLAG, timedelta(days=7)).average_latency_ms is None


class TestRemovalCandidates:
    """Test finding watched elements nobody uses any more."""

    def test_quiet_elements_are_candidates(self, monitor, clock):
        now = clock()
        monitor.watch(ARCHIVE, "orders_archive_deprecated_20250115_unu")
        monitor.watch(LEGACY_FLAG, "legacy_flag_deprecated_20250115_unu")
        monitor.record_access(ARCHIVE, "read", "application", timestamp=now - timedelta(days=2))
        monitor.record_access(LEGACY_FLAG, "read", "application", timestamp=now - timedelta(days=45))
        monitor.flush()

        assert monitor.removal_candidates(days=30) == [LEGACY_FLAG]
        assert monitor.removal_candidates(days=1) == [ARCHIVE, LEGACY_FLAG]
        assert monitor.removal_candidates(days=60) == []

    def test_unwatched_elements_are_ignored(self, monitor):
        assert monitor.removal_candidates() == []
