"""
Heartbeat tests - task registry, task execution and status reporting.
"""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from schema_sunset.core import heartbeat
from schema_sunset.core.heartbeat import (
    ScheduledTask,
    get_status,
    list_tasks,
    register_maintenance_tasks,
    register_task,
    reset_task,
    run_due_tasks,
    run_task,
    start,
    stop,
    unregister_task,
)


@pytest.fixture(autouse=True)
def reset_heartbeat():
    """Reset heartbeat state between tests."""
    heartbeat.tasks.clear()
    heartbeat.running = False
    heartbeat.shutdown_event = None
    yield
    heartbeat.tasks.clear()
    heartbeat.running = False


class TestRegistration:
    """Test task registration."""

    def test_register_and_unregister(self):
        task = register_task("noop", 30, lambda: None)
        assert list_tasks() == ["noop"]
        assert task.interval_sec == 30

        unregister_task("noop")
        assert list_tasks() == []

    def test_unregister_unknown_is_ignored(self):
        unregister_task("missing")
        assert list_tasks() == []

    def test_non_callable(self):
        with pytest.raises(ValueError, match="needs a callable"):
            register_task("bad", 30, "not_callable")

    def test_interval_too_small(self):
        with pytest.raises(ValueError, match="interval must be >= 1"):
            register_task("bad", 0, lambda: None)

    def test_maintenance_tasks(self):
        orchestrator = MagicMock()

        register_maintenance_tasks(orchestrator, interval_sec=10)

        assert sorted(list_tasks()) == [
            "flush_access_events", "promote_due", "purge_expired_backups", "roll_up_access_events"
        ]
        assert heartbeat.tasks["promote_due"].interval_sec == 10
        assert heartbeat.tasks["purge_expired_backups"].interval_sec == 600
        assert heartbeat.tasks["flush_access_events"].func is orchestrator.monitor.flush


class TestScheduledTask:

    def test_due_until_first_run(self):
        task = ScheduledTask(name="noop", interval_sec=30, func=lambda: None)
        assert task.is_due(now=0.0)

        task.last_run = 100.0
        assert not task.is_due(now=129.0)
        assert task.is_due(now=130.0)

    def test_to_dict(self):
        task = ScheduledTask(name="noop", interval_sec=30, func=lambda: None, last_run=100.0)
        data = task.to_dict()

        assert data["next_run"] == 130.0
        assert data["runs"] == 0


class TestExecution:
    """Test running tasks."""

    def test_run_task_records_success(self):
        task = register_task("promote_due", 30, MagicMock(return_value=3))

        assert run_task(task) == 3
        assert task.runs == 1
        assert task.last_run is not None
        assert not task.is_due()

        reset_task("promote_due")
        assert task.is_due()

    def test_failing_task_raises_runtime_error(self):
        task = register_task("broken", 30, MagicMock(side_effect=OSError("disk full")))

        with pytest.raises(RuntimeError, match="'broken' failed: disk full"):
            run_task(task)
        assert task.failures == 1
        assert task.last_error == "disk full"
        assert task.last_run is not None

    def test_pass_survives_failing_task(self):
        counter = MagicMock(return_value=None)
        register_task("broken", 60, MagicMock(side_effect=OSError("disk full")))
        register_task("counter", 60, counter)

        assert run_due_tasks() == 2
        counter.assert_called_once()
        assert run_due_tasks() == 0

    def test_loop_runs_until_stopped(self):
        calls = []
        register_task("counter", 60, lambda: calls.append(1))

        with patch("schema_sunset.core.heartbeat.is_heartbeat_enabled", return_value=True):
            loop = threading.Thread(target=start)
            loop.start()
            deadline = time.time() + 2
            while not calls and time.time() < deadline:
                time.sleep(0.02)
            stop()
            loop.join(timeout=2)

        assert calls == [1]
        assert not heartbeat.running

    def test_start_disabled(self):
        with patch("schema_sunset.core.heartbeat.is_heartbeat_enabled", return_value=False):
            start()
        assert not heartbeat.running


class TestStatus:

    def test_disabled(self):
        with patch("schema_sunset.core.heartbeat.is_heartbeat_enabled", return_value=False):
            assert get_status()["status"] == "disabled"

    def test_enabled(self):
        register_task("promote_due", 30, lambda: None)

        with patch("schema_sunset.core.heartbeat.is_heartbeat_enabled", return_value=True):
            status = get_status()

        assert status["status"] == "stopped"
        assert status["tasks"]["promote_due"]["interval_sec"] == 30
        assert status["tasks"]["promote_due"]["next_run"] is None
