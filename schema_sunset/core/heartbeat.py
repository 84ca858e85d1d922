"""
Periodic maintenance loop: promotes records whose grace period has passed,
flushes and rolls up access events, and purges expired backups.

Tasks live in a module-level registry so that the runner script, the API
process and tests all see the same schedule.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .config import get_heartbeat_interval, is_heartbeat_enabled, validate_heartbeat_config

from util.logging import logger

# Seconds between scheduling passes; task intervals are whole seconds
POLL_INTERVAL_SEC = 0.1


@dataclass
class ScheduledTask:
    """One periodic maintenance job and its run history."""
    name: str
    interval_sec: int
    func: Callable[[], Any]
    last_run: Optional[float] = None
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None

    def is_due(self, now: Optional[float] = None) -> bool:
        if self.last_run is None:
            return True
        now = time.monotonic() if now is None else now
        return now - self.last_run >= self.interval_sec

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval_sec": self.interval_sec,
            "last_run": self.last_run,
            "next_run": self.last_run + self.interval_sec if self.last_run is not None else None,
            "runs": self.runs,
            "failures": self.failures,
            "last_error": self.last_error,
        }


tasks: Dict[str, ScheduledTask] = {}
running = False
shutdown_event: Optional[threading.Event] = None


def register_task(name: str, interval_sec: int, func: Callable[[], Any]) -> ScheduledTask:
    """
    Add (or replace) a periodic task.

    Raises:
        ValueError: if func is not callable, the interval is under one
            second or the heartbeat configuration is invalid
    """
    if not callable(func):
        raise ValueError(f"Task {name!r} needs a callable, got {func!r}")
    if interval_sec < 1:
        raise ValueError(f"Task {name!r} interval must be >= 1 second: {interval_sec}")

    problems = validate_heartbeat_config()
    if problems:
        raise ValueError(f"Cannot schedule {name!r}: {problems}")

    task = ScheduledTask(name=name, interval_sec=interval_sec, func=func)
    tasks[name] = task
    logger.info(f"Scheduled maintenance task '{name}' every {interval_sec}s")
    return task


def unregister_task(name: str):
    if tasks.pop(name, None) is not None:
        logger.info(f"Removed maintenance task '{name}'")


def list_tasks():
    return list(tasks)


def register_maintenance_tasks(orchestrator, interval_sec: Optional[int] = None):
    """Schedule the standard deprecation maintenance for one orchestrator.

    Promotion and flushing run every interval; roll-up and backup purging
    are hourly-scale work and run sixty times less often.
    """
    interval_sec = interval_sec or get_heartbeat_interval()
    register_task("promote_due", interval_sec, orchestrator.promote_due)
    register_task("flush_access_events", interval_sec, orchestrator.monitor.flush)
    register_task("roll_up_access_events", interval_sec * 60, orchestrator.monitor.roll_up)
    register_task("purge_expired_backups", interval_sec * 60, orchestrator.backups.purge_expired)


def run_task(task: ScheduledTask) -> Any:
    """
    Run one task now and record the outcome.

    Raises:
        RuntimeError: wrapping whatever the task raised
    """
    started = time.monotonic()
    try:
        result = task.func()
    except Exception as e:
        finished = time.monotonic()
        task.last_run = finished
        task.failures += 1
        task.last_error = str(e)
        logger.log_heartbeat_task(task.name, started, finished, "failed", {"error": str(e)})
        raise RuntimeError(f"Maintenance task '{task.name}' failed: {e}") from e

    finished = time.monotonic()
    task.last_run = finished
    task.runs += 1
    task.last_error = None
    logger.log_heartbeat_task(task.name, started, finished, "success",
                              {"result": result} if result is not None else None)
    return result


def run_due_tasks() -> int:
    """One scheduling pass. A failing task is logged and does not stop the others."""
    ran = 0
    now = time.monotonic()
    for task in list(tasks.values()):
        if not task.is_due(now):
            continue
        try:
            run_task(task)
        except RuntimeError as e:
            logger.error(str(e))
        ran += 1
    return ran


def start():
    """Run the scheduling loop in the calling thread until stop() is called."""
    global running, shutdown_event

    if not is_heartbeat_enabled():
        logger.info("Maintenance heartbeat disabled (HEARTBEAT_ENABLED=false)")
        return
    if running:
        raise RuntimeError("Maintenance heartbeat already running")

    problems = validate_heartbeat_config()
    if problems:
        raise ValueError(f"Heartbeat configuration invalid: {problems}")

    running = True
    shutdown_event = threading.Event()
    logger.info(f"Maintenance heartbeat started with tasks: {list_tasks()}")
    try:
        while running and not shutdown_event.is_set():
            run_due_tasks()
            shutdown_event.wait(POLL_INTERVAL_SEC)
    except KeyboardInterrupt:
        logger.info("Maintenance heartbeat interrupted")
    finally:
        running = False
        logger.info("Maintenance heartbeat stopped")


def stop():
    global running

    if not running:
        return
    running = False
    if shutdown_event is not None:
        shutdown_event.set()


def reset_task(name: str):
    """Make a task due on the next pass."""
    if name in tasks:
        tasks[name].last_run = None


def get_status() -> Dict[str, Any]:
    if not is_heartbeat_enabled():
        return {"status": "disabled", "reason": "HEARTBEAT_ENABLED=false"}
    return {
        "status": "running" if running else "stopped",
        "tasks": {name: task.to_dict() for name, task in tasks.items()},
    }
