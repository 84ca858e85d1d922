"""
Safety checks run before every phase transition.

Checks run in a fixed order, each on a worker thread under a deadline. A check
that times out or raises counts as a critical failure. A catalog outage stops
the remaining checks, since nothing after it can be evaluated meaningfully.
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple

from .catalog import CatalogReader
from .config import (
    BACKUP_MAX_AGE_HOURS,
    CORE_ELEMENTS,
    SAFETY_CHECK_TIMEOUT_SEC,
    SAFETY_CHECK_WORKERS,
    EnvironmentPolicy,
)
from .db import METADATA_TABLES, quote_identifier
from .errors import CatalogUnavailableError
from .monitor import AccessMonitor
from .naming import validate_can_deprecate
from .schema import (
    BackupRecord,
    BackupStatus,
    Dependent,
    Element,
    ElementKind,
    RiskLevel,
    SafetyCheckResult,
    SafetyReport,
    Severity,
)

from util.logging import logger

RowCounter = Callable[[Element, str], int]


@dataclass
class SafetyContext:
    """Everything a safety run needs beyond the element itself."""
    policy: EnvironmentPolicy
    live_name: Optional[str] = None
    backup: Optional[BackupRecord] = None
    # Phase 2 backups must be newer than this (the latest approval)
    backup_not_before: Optional[datetime] = None
    deprecated_since: Optional[datetime] = None
    evaluated_at: Optional[datetime] = None
    max_backup_age: timedelta = field(default_factory=lambda: timedelta(hours=BACKUP_MAX_AGE_HOURS))


def make_row_counter(connect: Callable[[], sqlite3.Connection]) -> RowCounter:
    """Row counter for the data-integrity check. Columns count non-null values."""
    def count(element: Element, live_name: str) -> int:
        if element.kind == ElementKind.INDEX:
            return 0
        conn = connect()
        try:
            if element.kind == ElementKind.TABLE:
                query = f"SELECT COUNT(*) FROM {quote_identifier(live_name)}"
            else:
                query = (f"SELECT COUNT(*) FROM {quote_identifier(element.owner)} "
                         f"WHERE {quote_identifier(live_name)} IS NOT NULL")
            return conn.execute(query).fetchone()[0]
        finally:
            conn.close()

    return count


class _ShortCircuit(Exception):
    """Raised by the runner to stop after a result that makes later checks meaningless."""

    def __init__(self, result: SafetyCheckResult):
        super().__init__(result.message)
        self.result = result


class SafetyCheckEngine:
    """Runs the ordered safety checks for one element and classifies its risk."""

    def __init__(self, catalog: CatalogReader, monitor: AccessMonitor, row_counter: RowCounter,
                 core_elements: Iterable[str] = CORE_ELEMENTS,
                 check_timeout: float = SAFETY_CHECK_TIMEOUT_SEC,
                 max_workers: int = SAFETY_CHECK_WORKERS,
                 clock: Callable[[], datetime] = datetime.now):
        self.catalog = catalog
        self.monitor = monitor
        self.row_counter = row_counter
        self.core_elements = {name.lower() for name in core_elements}
        self.check_timeout = check_timeout
        self.clock = clock
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="safety")
        # workers still busy with checks that already timed out
        self.stuck_workers = 0
        self._stuck_lock = threading.Lock()

    def shutdown(self):
        self._executor.shutdown(wait=False)

    def is_core_element(self, element: Element) -> bool:
        names = {element.name.lower(), element.display.lower()}
        if element.owner:
            names.add(element.owner.lower())
        if names & self.core_elements:
            return True
        if element.name.lower().startswith("sqlite_"):
            return True
        return element.kind == ElementKind.TABLE and element.name in METADATA_TABLES

    def run_checks(self, element: Element, phase: int, context: SafetyContext) -> SafetyReport:
        """
        Run all checks for a phase transition.

        Args:
            element: Element being deprecated
            phase: 1 for the rename, 2 for the removal
            context: Policy, backup and timing inputs

        Returns:
            SafetyReport; report.passed is False on any critical failure
        """
        now = context.evaluated_at or self.clock()
        live_name = context.live_name or element.name
        state = {"dependents": [], "rows": None}

        checks: List[Tuple[str, Callable[[], SafetyCheckResult]]] = [
            ("element-eligibility", lambda: self._check_eligibility(element, phase, live_name, now)),
            ("dependency", lambda: self._check_dependencies(element, live_name, now, state)),
            ("data-integrity", lambda: self._check_data_integrity(element, live_name, context, now, state)),
        ]
        if phase == 2:
            checks.append(("access-history", lambda: self._check_access_history(element, context, now)))
        checks.append(("backup-freshness", lambda: self._check_backup_freshness(element, phase, live_name,
                                                                               context, now, state)))

        results: List[SafetyCheckResult] = []
        for name, check in checks:
            try:
                result = self._run_with_deadline(name, check, now)
            except _ShortCircuit as stop:
                results.append(stop.result)
                break
            results.append(result)

        for result in results:
            logger.log_safety_check(element.key, result.check_name, result.severity.value,
                                    result.passed, result.message)

        age_days = (now - context.deprecated_since).days if context.deprecated_since else 0
        risk = self.classify_risk(element, state["dependents"], age_days, results)
        return SafetyReport(
            element_key=element.key,
            phase=phase,
            results=results,
            risk_level=risk,
            evaluated_at=now,
            dependents=state["dependents"],
        )

    def _run_with_deadline(self, name: str, check: Callable[[], SafetyCheckResult],
                           now: datetime) -> SafetyCheckResult:
        future = self._executor.submit(check)
        try:
            return future.result(timeout=self.check_timeout)
        except FuturesTimeout:
            if not future.cancel():
                self._track_stuck(name, future)
            return SafetyCheckResult(
                check_name=name, severity=Severity.CRITICAL, passed=False,
                message=f"Check did not finish within {self.check_timeout:.0f}s",
                timestamp=now, remediation="Retry when the database is less busy",
                details={"timeout_sec": self.check_timeout, "stuck_workers": self.stuck_workers},
            )
        except CatalogUnavailableError as e:
            raise _ShortCircuit(SafetyCheckResult(
                check_name=name, severity=Severity.CRITICAL, passed=False,
                message=f"Catalog unavailable: {e.message}", timestamp=now,
                remediation=e.remediation, details={"error": e.code},
            ))
        except Exception as e:
            logger.error(f"Safety check '{name}' raised: {e}")
            return SafetyCheckResult(
                check_name=name, severity=Severity.CRITICAL, passed=False,
                message=f"Check failed to run: {e}", timestamp=now,
                remediation="Inspect the error and retry",
            )

    def _track_stuck(self, name: str, future):
        """A running check cannot be cancelled; count its worker until it returns."""
        def released(_):
            with self._stuck_lock:
                self.stuck_workers -= 1
            logger.info(f"Timed-out safety check '{name}' finished; worker released")

        with self._stuck_lock:
            self.stuck_workers += 1
            stuck = self.stuck_workers
        logger.warning(f"Safety check '{name}' overran its deadline and still holds a worker "
                       f"({stuck}/{self.max_workers} stuck)")
        future.add_done_callback(released)

    def _check_eligibility(self, element: Element, phase: int, live_name: str, now: datetime) -> SafetyCheckResult:
        problems = []
        core = self.is_core_element(element)
        if core:
            problems.append(f"{element.display} is a core or system element")
        if phase == 1:
            problems.extend(validate_can_deprecate(element.name))
        if not self.catalog.element_exists(element, live_name):
            problems.append(f"{element.kind.value} '{live_name}' does not exist")

        if problems:
            return SafetyCheckResult(
                check_name="element-eligibility", severity=Severity.CRITICAL, passed=False,
                message="; ".join(problems), timestamp=now,
                remediation="Choose an existing, non-core element", details={"core": core},
            )
        return SafetyCheckResult(
            check_name="element-eligibility", severity=Severity.INFO, passed=True,
            message=f"{element.display} may be deprecated", timestamp=now,
        )

    def _check_dependencies(self, element: Element, live_name: str, now: datetime, state) -> SafetyCheckResult:
        dependents = self.catalog.find_dependents_transitive(element, live_name)
        state["dependents"] = dependents
        blocking = [d for d in dependents if d.active and not d.owned]

        if blocking:
            labels = ", ".join(d.label for d in blocking)
            return SafetyCheckResult(
                check_name="dependency", severity=Severity.CRITICAL, passed=False,
                message=f"{len(blocking)} active dependent(s): {labels}; remove these first",
                timestamp=now,
                remediation=f"Drop or repoint {labels} before deprecating {element.display}",
                details={"dependents": [d.to_dict() for d in blocking]},
            )

        owned = [d for d in dependents if d.owned]
        message = "No active dependents"
        if owned:
            message += f" ({len(owned)} owned object(s) removed with the element)"
        return SafetyCheckResult(
            check_name="dependency", severity=Severity.INFO, passed=True, message=message, timestamp=now,
            details={"owned": [d.name for d in owned]},
        )

    def _rows(self, element: Element, live_name: str, state) -> int:
        if state["rows"] is None:
            state["rows"] = self.row_counter(element, live_name)
        return state["rows"]

    def _check_data_integrity(self, element: Element, live_name: str, context: SafetyContext,
                              now: datetime, state) -> SafetyCheckResult:
        if element.kind == ElementKind.INDEX:
            return SafetyCheckResult(
                check_name="data-integrity", severity=Severity.INFO, passed=True,
                message="Indexes hold no data", timestamp=now,
            )

        rows = self._rows(element, live_name, state)
        if rows == 0:
            return SafetyCheckResult(
                check_name="data-integrity", severity=Severity.INFO, passed=True,
                message=f"{element.display} is empty", timestamp=now, details={"rows": 0},
            )

        backup = context.backup
        fresh = (
            backup is not None
            and backup.status == BackupStatus.VERIFIED
            and not backup.is_expired(now)
            and now - backup.created_at <= context.max_backup_age
        )
        if not fresh:
            hours = int(context.max_backup_age.total_seconds() // 3600)
            return SafetyCheckResult(
                check_name="data-integrity", severity=Severity.CRITICAL, passed=False,
                message=f"{element.display} holds {rows} row(s) and has no verified backup newer than {hours}h",
                timestamp=now, remediation="Create and verify a backup, then retry",
                details={"rows": rows, "backup_id": backup.id if backup else None},
            )
        return SafetyCheckResult(
            check_name="data-integrity", severity=Severity.INFO, passed=True,
            message=f"{rows} row(s) covered by verified backup {backup.id}", timestamp=now,
            details={"rows": rows, "backup_id": backup.id},
        )

    def _check_access_history(self, element: Element, context: SafetyContext, now: datetime) -> SafetyCheckResult:
        window_days = context.policy.access_window_days
        stats = self.monitor.get_stats(element, timedelta(days=window_days), now)
        details = stats.to_dict()

        if stats.total_events == 0:
            return SafetyCheckResult(
                check_name="access-history", severity=Severity.INFO, passed=True,
                message=f"No access in the last {window_days} day(s)", timestamp=now, details=details,
            )
        if stats.only_maintenance_sources:
            return SafetyCheckResult(
                check_name="access-history", severity=Severity.WARNING, passed=True,
                message=f"{stats.total_events} access(es) in the last {window_days} day(s), "
                        f"all from migration or admin sources",
                timestamp=now, remediation="Confirm the maintenance jobs no longer need the element",
                details=details,
            )
        return SafetyCheckResult(
            check_name="access-history", severity=Severity.CRITICAL, passed=False,
            message=f"{stats.total_events} access(es) in the last {window_days} day(s), "
                    f"last seen {details['last_seen']}",
            timestamp=now, remediation="Find and remove the remaining callers, then wait out the window",
            details=details,
        )

    def _check_backup_freshness(self, element: Element, phase: int, live_name: str, context: SafetyContext,
                                now: datetime, state) -> SafetyCheckResult:
        if phase == 1 and (element.kind == ElementKind.INDEX or self._rows(element, live_name, state) == 0):
            return SafetyCheckResult(
                check_name="backup-freshness", severity=Severity.INFO, passed=True,
                message="No backup needed to rename an element without data", timestamp=now,
            )

        def fail(message: str, remediation: str = "Create and verify a fresh backup") -> SafetyCheckResult:
            return SafetyCheckResult(
                check_name="backup-freshness", severity=Severity.CRITICAL, passed=False, message=message,
                timestamp=now, remediation=remediation,
                details={"backup_id": backup.id if backup else None},
            )

        backup = context.backup
        if backup is None:
            return fail("No backup exists for this element")
        if backup.status != BackupStatus.VERIFIED:
            return fail(f"Backup {backup.id} is {backup.status.value}, not verified",
                        remediation=f"Verify backup {backup.id} (verify-backup {backup.id}) and retry")
        if backup.is_expired(now):
            return fail(f"Backup {backup.id} expired at {backup.expires_at.isoformat()}")
        if phase == 2 and context.backup_not_before and backup.created_at < context.backup_not_before:
            return fail(f"Backup {backup.id} predates the latest approval")

        return SafetyCheckResult(
            check_name="backup-freshness", severity=Severity.INFO, passed=True,
            message=f"Backup {backup.id} is verified", timestamp=now, details={"backup_id": backup.id},
        )

    # Risk

    def classify_risk(self, element: Element, dependents: List[Dependent], age_days: int,
                      results: List[SafetyCheckResult]) -> RiskLevel:
        """
        Risk from the element kind, dependent count and time since deprecation,
        combined with the worst failed severity.
        """
        core = self.is_core_element(element)
        external = [d for d in dependents if not d.owned]
        is_table = element.kind == ElementKind.TABLE

        if core or any(d.active for d in external):
            base = RiskLevel.CRITICAL
        elif not is_table and not external and age_days > 90:
            base = RiskLevel.LOW
        elif is_table and len(dependents) < 3 and age_days > 60:
            base = RiskLevel.MEDIUM
        elif is_table and len(dependents) >= 3 and age_days < 60:
            base = RiskLevel.HIGH
        else:
            base = RiskLevel.HIGH if is_table else RiskLevel.MEDIUM

        failed = [r for r in results if not r.passed]
        if any(r.severity == Severity.CRITICAL for r in failed):
            return RiskLevel.CRITICAL
        if any(r.severity == Severity.WARNING for r in failed):
            return RiskLevel.worst(base, RiskLevel.MEDIUM)
        return base
