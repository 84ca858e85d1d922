#!/usr/bin/env python3
"""
Periodic maintenance loop for the deprecation engine.

Promotes Phase 1 records into monitoring once their grace period has passed,
flushes and rolls up access events, and purges expired backups.
"""

import sys
from pathlib import Path

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from schema_sunset.core.config import get_heartbeat_interval, is_heartbeat_enabled, validate_config
from schema_sunset.core.heartbeat import register_maintenance_tasks, start, stop
from schema_sunset.core.service import build_orchestrator, shutdown


def main():
    """Main entry point for heartbeat script."""
    if not is_heartbeat_enabled():
        print("Heartbeat requires HEARTBEAT_ENABLED=true")
        return 1

    issues = validate_config()
    if issues:
        print("Invalid configuration:")
        for issue in issues:
            print(f"  - {issue}")
        return 2

    orchestrator = build_orchestrator()
    try:
        resumed = orchestrator.resume_monitoring()
        orchestrator.monitor.start()
        register_maintenance_tasks(orchestrator)
        print(f"Watching {resumed} deprecated element(s); maintenance every {get_heartbeat_interval()}s")
        start()
    except KeyboardInterrupt:
        print("\nShutting down...")
        stop()
    finally:
        shutdown(orchestrator)
    return 0


if __name__ == "__main__":
    sys.exit(main())
