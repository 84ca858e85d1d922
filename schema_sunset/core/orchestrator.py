"""
Deprecation lifecycle orchestration.

The orchestrator is the only component that moves a DeprecationRecord between
phases. Every transition holds a per-element lock, and every destructive
statement commits in the same transaction as the metadata describing it (the
metadata store is attached to the target connection for the duration).

Public operations never raise for a failed transition: they return a
TransitionResult carrying the typed error, the failed checks and remediation.
"""

import sqlite3
import threading
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .approval import ApprovalWorkflow
from .backup import BackupScope, BackupValidator
from .catalog import CatalogReader, retarget_ddl
from .config import (
    BACKUP_MAX_AGE_HOURS,
    BACKUP_TIMEOUT_SEC,
    DEPRECATION_ENVIRONMENT,
    MAX_CONCURRENT_DESTRUCTIVE_OPS,
    REFERENCE_POLICIES,
    TRANSITION_LOCK_TIMEOUT_SEC,
    EnvironmentPolicy,
    get_policy,
)
from .dao import DeprecationStore, DuplicateActiveRecordError
from .db import attach_metadata, get_db, quote_identifier, transaction
from .errors import (
    AccessRaceError,
    ApprovalRequiredError,
    BackupUnavailableError,
    CatalogUnavailableError,
    ConfirmationRequiredError,
    DeprecationError,
    DestructiveOperationError,
    ElementNotFoundError,
    InvalidTransitionError,
    RecordNotFoundError,
    RollbackWindowExpiredError,
    SafetyViolationError,
    TransitionInProgressError,
)
from .monitor import AccessMonitor
from .naming import encode_unique, summarize_names
from .rollback import MODE_RESTORE, RollbackManager
from .safety import SafetyCheckEngine, SafetyContext
from .schema import (
    AccessStats,
    BackupRecord,
    BackupStatus,
    Decision,
    DeprecationRecord,
    Element,
    ElementKind,
    Phase,
    ReasonCode,
    RiskLevel,
    RollbackResult,
    SafetyCheckResult,
    SafetyReport,
    Severity,
    can_transition,
)

from util.logging import logger, audit_event


@dataclass
class TransitionResult:
    """Outcome of one lifecycle operation."""
    success: bool
    deprecation_id: Optional[str] = None
    element_key: Optional[str] = None
    from_phase: Optional[Phase] = None
    to_phase: Optional[Phase] = None
    record: Optional[DeprecationRecord] = None
    report: Optional[SafetyReport] = None
    error: Optional[DeprecationError] = None
    backup: Optional[BackupRecord] = None
    rollback: Optional[RollbackResult] = None

    @property
    def failed_checks(self) -> List[str]:
        if self.report is None:
            return []
        return [r.check_name for r in self.report.critical_failures]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "deprecation_id": self.deprecation_id,
            "element": self.element_key,
            "from_phase": self.from_phase.value if self.from_phase else None,
            "to_phase": self.to_phase.value if self.to_phase else None,
            "error": self.error.to_dict() if self.error else None,
            "failed_checks": self.failed_checks,
            "report": self.report.to_dict() if self.report else None,
            "backup": self.backup.to_dict() if self.backup else None,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "record": self.record.to_dict() if self.record else None,
        }


@dataclass
class PlanResult:
    """Outcome of planning one element."""
    element_key: str
    success: bool
    created: bool = False
    record: Optional[DeprecationRecord] = None
    report: Optional[SafetyReport] = None
    error: Optional[DeprecationError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "element": self.element_key,
            "success": self.success,
            "created": self.created,
            "deprecation_id": self.record.id if self.record else None,
            "phase": self.record.phase.value if self.record else None,
            "checks_passed": self.report.passed if self.report else None,
            "risk_level": self.report.risk_level.value if self.report else None,
            "report": self.report.to_dict() if self.report else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class StatusReport:
    record: DeprecationRecord
    policy: EnvironmentPolicy
    missing_roles: List[str] = field(default_factory=list)
    rejected_roles: List[str] = field(default_factory=list)
    access: Optional[AccessStats] = None
    backup: Optional[BackupRecord] = None
    monitoring_ends_at: Optional[datetime] = None
    audit: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        record = self.record
        return {
            "record": record.to_dict(),
            "phase": record.phase.value,
            "live_name": record.live_name,
            "risk_level": record.risk_level.value if record.risk_level else None,
            "policy": self.policy.to_dict(),
            "safety_attempts": [r.to_dict() for r in record.safety_attempts],
            "approvals": [a.to_dict() for a in record.approvals],
            "missing_roles": self.missing_roles,
            "rejected_roles": self.rejected_roles,
            "access": self.access.to_dict() if self.access else None,
            "backup": self.backup.to_dict() if self.backup else None,
            "monitoring_ends_at": self.monitoring_ends_at.isoformat() if self.monitoring_ends_at else None,
            "audit": self.audit,
        }


class _AccessRace(Exception):
    """Raised inside the drop transaction to roll it back."""

    def __init__(self, events: int):
        super().__init__(f"{events} access event(s) after evaluation")
        self.events = events


class DeprecationOrchestrator:
    """Coordinates the two-phase deprecation lifecycle."""

    def __init__(self, store: DeprecationStore, catalog: CatalogReader, safety: SafetyCheckEngine,
                 backups: BackupValidator, monitor: AccessMonitor, rollback: RollbackManager,
                 connect_target: Callable[[], sqlite3.Connection],
                 policies: Mapping[str, EnvironmentPolicy] = REFERENCE_POLICIES,
                 default_environment: str = DEPRECATION_ENVIRONMENT,
                 approvals: Optional[ApprovalWorkflow] = None,
                 metadata_path: Optional[str] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 max_destructive_ops: int = MAX_CONCURRENT_DESTRUCTIVE_OPS,
                 lock_timeout: float = TRANSITION_LOCK_TIMEOUT_SEC,
                 backup_timeout: float = BACKUP_TIMEOUT_SEC):
        self.store = store
        self.catalog = catalog
        self.safety = safety
        self.backups = backups
        self.monitor = monitor
        self.rollback_manager = rollback
        self.policies = policies
        self.default_environment = default_environment
        self.approvals = approvals or ApprovalWorkflow(store, clock)
        self._connect_target = connect_target
        self.metadata_path = metadata_path or store.db_path
        self.clock = clock
        self.lock_timeout = lock_timeout
        self.backup_timeout = backup_timeout

        # element key -> lock, kept only while someone holds or waits for it
        self._locks: Dict[str, threading.Lock] = {}
        self._lock_users: Counter = Counter()
        self._registry_lock = threading.Lock()
        self._destructive = threading.BoundedSemaphore(max_destructive_ops)

    # Locking and helpers

    @contextmanager
    def _element_lock(self, element_key: str):
        with self._registry_lock:
            lock = self._locks.setdefault(element_key, threading.Lock())
            self._lock_users[element_key] += 1
        try:
            if not lock.acquire(timeout=self.lock_timeout):
                raise TransitionInProgressError(element_key, self.lock_timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._registry_lock:
                self._lock_users[element_key] -= 1
                if not self._lock_users[element_key]:
                    del self._lock_users[element_key]
                    del self._locks[element_key]

    def _load(self, deprecation_id: str) -> DeprecationRecord:
        record = self.store.get_record(deprecation_id)
        if record is None:
            raise RecordNotFoundError(deprecation_id)
        return record

    def _policy(self, record: DeprecationRecord) -> EnvironmentPolicy:
        return get_policy(record.environment, self.policies)

    def _advance(self, record: DeprecationRecord, target: Phase, now: datetime, **changes) -> DeprecationRecord:
        if not can_transition(record.phase, target):
            raise InvalidTransitionError(
                f"Cannot move {record.id} from {record.phase.value} to {target.value}",
                current_phase=record.phase.value,
            )
        timestamps = dict(record.phase_timestamps)
        timestamps[target] = now
        return replace(record, phase=target, phase_timestamps=timestamps, **changes)

    def _audit(self, record: DeprecationRecord, actor: str, action: str, payload: Dict[str, Any],
               now: datetime, conn: Optional[sqlite3.Connection] = None, schema: str = "main"):
        self.store.append_audit(record.id, actor, action, payload, now, conn, schema)
        audit_event(
            event_type=f"deprecation_{action}",
            identifiers={"deprecation_id": record.id, "element": record.element.key},
            payload=payload,
        )

    def _failure(self, error: DeprecationError, record: Optional[DeprecationRecord] = None,
                 element_key: Optional[str] = None, report: Optional[SafetyReport] = None,
                 target: Optional[Phase] = None, backup: Optional[BackupRecord] = None) -> TransitionResult:
        if record is not None:
            logger.log_transition(record.id, record.element.key, record.phase.value,
                                  target.value if target else record.phase.value, "failed",
                                  {"error": error.code, "message": error.message})
        else:
            logger.warning(f"Deprecation operation failed for {element_key}: {error.message}")
        return TransitionResult(
            success=False,
            deprecation_id=record.id if record else None,
            element_key=record.element.key if record else element_key,
            from_phase=record.phase if record else None,
            to_phase=record.phase if record else None,
            record=record,
            report=report,
            error=error,
            backup=backup,
        )

    def _save_attempt(self, record: DeprecationRecord, report: SafetyReport,
                      conn: Optional[sqlite3.Connection] = None, schema: str = "main"):
        self.store.save_safety_report(record.id, uuid.uuid4().hex, report, conn, schema)
        record.safety_attempts.append(report)

    def _promote_if_due(self, record: DeprecationRecord, now: datetime) -> DeprecationRecord:
        """phase1_active -> monitoring once the grace period has passed."""
        if record.phase != Phase.PHASE1_ACTIVE:
            return record
        entered = record.entered(Phase.PHASE1_ACTIVE)
        grace = timedelta(hours=self._policy(record).monitoring_grace_hours)
        if entered is None or now - entered < grace:
            return record

        promoted = self._advance(record, Phase.MONITORING, now)
        self.store.save_record(promoted, now)
        self._audit(promoted, "system", "monitoring_started", {"phase1_at": entered.isoformat()}, now)
        logger.log_transition(record.id, record.element.key, record.phase.value, Phase.MONITORING.value)
        return promoted

    def _backup_scope(self, record: DeprecationRecord, policy: EnvironmentPolicy) -> BackupScope:
        return BackupScope(element=record.element, live_name=record.live_name,
                           retention_days=policy.backup_retention_days)

    def _create_verified_backup(self, record: DeprecationRecord, policy: EnvironmentPolicy) -> BackupRecord:
        with self._destructive:
            backup = self.backups.create_backup_with_deadline(self._backup_scope(record, policy),
                                                              self.backup_timeout)
            self.backups.verify(backup.id)
        return self.store.get_backup(backup.id)

    def _rename_statements(self, record: DeprecationRecord, new_name: str) -> List[str]:
        element = record.element
        if element.kind == ElementKind.TABLE:
            return [f"ALTER TABLE {quote_identifier(record.original_name)} RENAME TO {quote_identifier(new_name)}"]
        if element.kind == ElementKind.COLUMN:
            return [
                f"ALTER TABLE {quote_identifier(element.owner)} "
                f"RENAME COLUMN {quote_identifier(record.original_name)} TO {quote_identifier(new_name)}"
            ]
        # SQLite cannot rename an index; recreate it under the new name
        return [
            f"DROP INDEX {quote_identifier(record.original_name)}",
            retarget_ddl(record.element_sql[0], new_name),
        ]

    @staticmethod
    def _drop_statement(record: DeprecationRecord) -> str:
        element = record.element
        live = quote_identifier(record.live_name)
        if element.kind == ElementKind.TABLE:
            return f"DROP TABLE {live}"
        if element.kind == ElementKind.COLUMN:
            return f"ALTER TABLE {quote_identifier(element.owner)} DROP COLUMN {live}"
        return f"DROP INDEX {live}"

    # Planning

    def plan(self, elements: Iterable[Union[Element, str]], reason: Union[ReasonCode, str],
             environment: Optional[str] = None, created_by: str = "system") -> List[PlanResult]:
        """
        Create a proposed record per element and report its Phase 1 checks.

        Nothing in the target schema changes. Planning the same element again
        with the same reason returns the existing record.

        Raises:
            ValueError: for an unknown reason code or environment
        """
        reason = ReasonCode(reason)
        environment = environment or self.default_environment
        policy = get_policy(environment, self.policies)

        results = []
        for item in elements:
            element = item if isinstance(item, Element) else Element.parse(item)
            try:
                with self._element_lock(element.key):
                    results.append(self._plan_one(element, reason, policy, created_by))
            except DeprecationError as e:
                logger.warning(f"Planning {element.key} failed: {e.message}")
                results.append(PlanResult(element_key=element.key, success=False, error=e))
        return results

    def _plan_one(self, element: Element, reason: ReasonCode, policy: EnvironmentPolicy,
                  created_by: str) -> PlanResult:
        existing = self.store.find_active_record(element.key)
        if existing is not None:
            return self._existing_plan(existing, reason)

        if not self.catalog.element_exists(element):
            raise ElementNotFoundError(element.key)

        now = self.clock()
        record = DeprecationRecord(
            id=f"dep_{uuid.uuid4().hex[:12]}",
            element=element,
            original_name=element.name,
            reason=reason,
            created_by=created_by,
            environment=policy.name,
            phase_timestamps={Phase.PROPOSED: now},
        )
        report = self.safety.run_checks(element, 1, SafetyContext(
            policy=policy, live_name=element.name,
            backup=self.store.find_latest_backup(element.key), evaluated_at=now,
        ))
        record.risk_level = report.risk_level

        try:
            self.store.create_record(record, now)
        except DuplicateActiveRecordError as e:
            return self._existing_plan(e.existing, reason)

        self._save_attempt(record, report)
        self._audit(record, created_by, "proposed", {
            "reason": reason.value, "environment": policy.name,
            "checks_passed": report.passed, "risk_level": report.risk_level.value,
        }, now)
        logger.log_transition(record.id, element.key, "none", Phase.PROPOSED.value)
        return PlanResult(element_key=element.key, success=True, created=True, record=record, report=report)

    def _existing_plan(self, existing: DeprecationRecord, reason: ReasonCode) -> PlanResult:
        if existing.reason != reason:
            raise InvalidTransitionError(
                f"{existing.element.key} already has active deprecation {existing.id} "
                f"({existing.phase.value}, reason {existing.reason.value})",
                current_phase=existing.phase.value,
                remediation=f"Roll back {existing.id} before planning with a different reason",
            )
        report = existing.safety_attempts[-1] if existing.safety_attempts else None
        return PlanResult(element_key=existing.element.key, success=True, created=False,
                          record=existing, report=report)

    # Phase 1

    def execute_phase1(self, deprecation_id: str, executed_by: Optional[str] = None) -> TransitionResult:
        """proposed -> phase1_active: rename the element in place."""
        try:
            record = self._load(deprecation_id)
            with self._element_lock(record.element.key):
                return self._execute_phase1(self._load(deprecation_id), executed_by or record.created_by)
        except DeprecationError as e:
            return self._failure(e, element_key=deprecation_id)

    def _execute_phase1(self, record: DeprecationRecord, actor: str) -> TransitionResult:
        if record.phase != Phase.PROPOSED:
            return self._failure(InvalidTransitionError(
                f"Phase 1 requires a proposed record; {record.id} is {record.phase.value}",
                current_phase=record.phase.value,
            ), record, target=Phase.PHASE1_ACTIVE)

        policy = self._policy(record)
        element = record.element
        now = self.clock()

        backup = self.store.find_latest_backup(element.key)
        try:
            rows = self.safety.row_counter(element, element.name)
        except sqlite3.Error as e:
            # eligibility reports the missing element below
            logger.warning(f"Could not count rows of {element.key}: {e}")
            rows = 0
        if rows > 0:
            fresh = (backup is not None and backup.status == BackupStatus.VERIFIED
                     and not backup.is_expired(now))
            if not fresh:
                try:
                    backup = self._create_verified_backup(record, policy)
                except BackupUnavailableError as e:
                    return self._failure(e, record, target=Phase.PHASE1_ACTIVE)
            record.backup_id = backup.id

        report = self.safety.run_checks(element, 1, SafetyContext(
            policy=policy, live_name=element.name, backup=backup, evaluated_at=now,
        ))
        record.risk_level = report.risk_level
        self._save_attempt(record, report)
        if not report.passed:
            self.store.save_record(record, now)
            self._audit(record, actor, "phase1_blocked", {"failed_checks": [r.check_name for r in report.critical_failures]}, now)
            return self._failure(SafetyViolationError(
                f"Phase 1 blocked for {element.display}", report
            ), record, report=report, target=Phase.PHASE1_ACTIVE, backup=backup)

        try:
            deprecated_name = encode_unique(
                element.name, now, record.reason,
                exists=lambda candidate: self.catalog.name_exists(element, candidate),
            )
            element_sql = self.catalog.element_sql(element)
        except DeprecationError as e:
            return self._failure(e, record, report=report, target=Phase.PHASE1_ACTIVE)

        updated = self._advance(
            record, Phase.PHASE1_ACTIVE, now,
            deprecated_name=deprecated_name,
            dependency_snapshot=list(report.dependents),
            element_sql=element_sql,
        )
        script = self.rollback_manager.plan(updated)
        updated.rollback_script_id = script.id

        statements = self._rename_statements(updated, deprecated_name)
        conn = self._connect_target()
        statement = ""
        try:
            schema = attach_metadata(conn, self.metadata_path)
            with transaction(conn):
                for statement in statements:
                    conn.execute(statement)
                self.store.save_record(updated, now, conn, schema)
                self.store.save_rollback_script(script, conn, schema)
                self.store.append_audit(updated.id, actor, "phase1_executed", {
                    "deprecated_name": deprecated_name, "dependents": len(updated.dependency_snapshot),
                }, now, conn, schema)
        except sqlite3.Error as e:
            return self._failure(DestructiveOperationError(f"Rename of {element.display} failed: {e}", statement),
                                 record, report=report, target=Phase.PHASE1_ACTIVE)
        finally:
            conn.close()

        self.monitor.watch(element, deprecated_name)
        logger.log_transition(updated.id, element.key, Phase.PROPOSED.value, Phase.PHASE1_ACTIVE.value,
                              details={"deprecated_name": deprecated_name})
        audit_event(
            event_type="deprecation_phase1_executed",
            identifiers={"deprecation_id": updated.id, "element": element.key},
            payload={"deprecated_name": deprecated_name, "risk_level": report.risk_level.value},
        )
        return TransitionResult(
            success=True, deprecation_id=updated.id, element_key=element.key,
            from_phase=Phase.PROPOSED, to_phase=Phase.PHASE1_ACTIVE,
            record=updated, report=report, backup=backup,
        )

    # Status and approvals

    def find_record(self, identifier: str) -> DeprecationRecord:
        """Look a record up by id, element reference or deprecated name."""
        record = self.store.get_record(identifier)
        if record is None:
            record = self.store.find_by_deprecated_name(identifier)
        if record is None:
            try:
                element = Element.parse(identifier)
            except ValueError:
                raise RecordNotFoundError(identifier)
            record = self.store.find_latest_record(element.key)
        if record is None:
            raise RecordNotFoundError(identifier)
        return record

    def status(self, identifier: str) -> StatusReport:
        """
        Current state of a deprecation.

        Raises:
            RecordNotFoundError: if nothing matches the identifier
        """
        record = self.find_record(identifier)
        now = self.clock()
        if record.phase == Phase.PHASE1_ACTIVE:
            with self._element_lock(record.element.key):
                self._promote_if_due(self._load(record.id), now)
            record = self._load(record.id)

        policy = self._policy(record)
        report = StatusReport(record=record, policy=policy)
        if not record.is_terminal and record.phase != Phase.PROPOSED:
            report.missing_roles = self.approvals.missing_roles(policy, record.approvals)
            report.rejected_roles = self.approvals.rejected_roles(policy, record.approvals)
        if record.deprecated_name:
            report.access = self.monitor.get_stats(record.element, timedelta(days=policy.access_window_days), now)
        if record.backup_id:
            report.backup = self.store.get_backup(record.backup_id)
        phase1_at = record.entered(Phase.PHASE1_ACTIVE)
        if phase1_at:
            report.monitoring_ends_at = phase1_at + timedelta(days=policy.min_monitoring_days)
        report.audit = self.store.list_audit(record.id)
        return report

    def approve(self, deprecation_id: str, role: str, approver: str,
                decision: Union[Decision, str] = Decision.APPROVE, justification: str = "") -> TransitionResult:
        """Append an approval decision for one role."""
        try:
            record = self._load(deprecation_id)
            with self._element_lock(record.element.key):
                now = self.clock()
                record = self._promote_if_due(self._load(deprecation_id), now)
                try:
                    approval = self.approvals.record_decision(
                        record, self._policy(record), role, approver, decision, justification
                    )
                except ValueError as e:
                    raise InvalidTransitionError(str(e), current_phase=record.phase.value)
                self.store.append_audit(record.id, approval.approver, f"approval_{approval.decision.value}",
                                        {"role": approval.role, "justification": justification}, now)
                record = self._load(deprecation_id)
        except DeprecationError as e:
            return self._failure(e, element_key=deprecation_id)

        return TransitionResult(
            success=True, deprecation_id=record.id, element_key=record.element.key,
            from_phase=record.phase, to_phase=record.phase, record=record,
        )

    # Backups

    def prepare_backup(self, deprecation_id: str, verify: bool = True) -> TransitionResult:
        """Create (and optionally verify) a backup for the record's element."""
        try:
            record = self._load(deprecation_id)
            with self._element_lock(record.element.key):
                record = self._load(deprecation_id)
                if record.is_terminal:
                    raise InvalidTransitionError(
                        f"{record.id} is {record.phase.value}; backups are taken before removal",
                        current_phase=record.phase.value,
                    )
                policy = self._policy(record)
                with self._destructive:
                    backup = self.backups.create_backup_with_deadline(self._backup_scope(record, policy),
                                                                      self.backup_timeout)
                    if verify:
                        self.backups.verify(backup.id)
                backup = self.store.get_backup(backup.id)
                if backup.status == BackupStatus.FAILED:
                    raise BackupUnavailableError(
                        f"Backup {backup.id} failed verification: {backup.diagnostic}",
                        remediation="Investigate the diagnostic and create a new backup",
                    )
                now = self.clock()
                record.backup_id = backup.id
                self.store.save_record(record, now)
                self._audit(record, "system", "backup_attached", {"backup_id": backup.id,
                                                                  "status": backup.status.value}, now)
        except DeprecationError as e:
            return self._failure(e, element_key=deprecation_id)

        return TransitionResult(
            success=True, deprecation_id=record.id, element_key=record.element.key,
            from_phase=record.phase, to_phase=record.phase, record=record, backup=backup,
        )

    def verify_backup(self, backup_id: str) -> BackupRecord:
        """
        Verify a backup and return its updated record.

        Raises:
            BackupUnavailableError: if the backup does not exist
        """
        with self._destructive:
            self.backups.verify(backup_id)
        return self.store.get_backup(backup_id)

    def _phase2_backup(self, record: DeprecationRecord, policy: EnvironmentPolicy,
                       not_before: Optional[datetime], now: datetime) -> BackupRecord:
        """Backup newer than the approvals and the age limit; a pending one is used and fails the checks."""
        current = self.store.get_backup(record.backup_id) if record.backup_id else None
        usable = (
            current is not None
            and current.status in (BackupStatus.VERIFIED, BackupStatus.PENDING)
            and not current.is_expired(now)
            and now - current.created_at <= timedelta(hours=BACKUP_MAX_AGE_HOURS)
            and (not_before is None or current.created_at >= not_before)
        )
        if usable:
            return current
        return self._create_verified_backup(record, policy)

    # Phase 2

    def execute_phase2(self, deprecation_id: str, confirm: bool = False,
                       executed_by: str = "system") -> TransitionResult:
        """monitoring -> phase2_approved -> phase2_complete: permanently remove the element."""
        if not confirm:
            return self._failure(ConfirmationRequiredError(), element_key=deprecation_id)
        try:
            record = self._load(deprecation_id)
            with self._element_lock(record.element.key):
                return self._execute_phase2(self._load(deprecation_id), executed_by)
        except DeprecationError as e:
            return self._failure(e, element_key=deprecation_id)

    def _execute_phase2(self, record: DeprecationRecord, actor: str) -> TransitionResult:
        now = self.clock()
        record = self._promote_if_due(record, now)
        if record.phase not in (Phase.MONITORING, Phase.PHASE2_APPROVED):
            return self._failure(InvalidTransitionError(
                f"Phase 2 requires a monitored record; {record.id} is {record.phase.value}",
                current_phase=record.phase.value,
                remediation="Wait for the monitoring grace period after Phase 1",
            ), record, target=Phase.PHASE2_COMPLETE)

        policy = self._policy(record)
        element = record.element
        phase1_at = record.entered(Phase.PHASE1_ACTIVE)
        window_ends = phase1_at + timedelta(days=policy.min_monitoring_days)
        if now < window_ends:
            elapsed = (now - phase1_at).days
            return self._failure(InvalidTransitionError(
                f"Monitoring window not elapsed: {elapsed} of {policy.min_monitoring_days} day(s)",
                current_phase=record.phase.value,
                remediation=f"Retry after {window_ends.isoformat(timespec='minutes')}",
            ), record, target=Phase.PHASE2_COMPLETE)

        approvals = self.store.list_approvals(record.id)
        missing = self.approvals.missing_roles(policy, approvals)
        if missing:
            return self._failure(ApprovalRequiredError(missing, self.approvals.rejected_roles(policy, approvals)),
                                 record, target=Phase.PHASE2_COMPLETE)
        not_before = self.approvals.latest_approval_time(approvals)

        try:
            backup = self._phase2_backup(record, policy, not_before, now)
        except BackupUnavailableError as e:
            return self._failure(e, record, target=Phase.PHASE2_COMPLETE)
        record.backup_id = backup.id

        self.monitor.flush()
        report = self.safety.run_checks(element, 2, SafetyContext(
            policy=policy, live_name=record.live_name, backup=backup, backup_not_before=not_before,
            deprecated_since=phase1_at, evaluated_at=now,
        ))
        record.risk_level = report.risk_level
        self._save_attempt(record, report)
        if not report.passed:
            self.store.save_record(record, now)
            self._audit(record, actor, "phase2_blocked",
                        {"failed_checks": [r.check_name for r in report.critical_failures]}, now)
            return self._failure(SafetyViolationError(f"Phase 2 blocked for {element.display}", report),
                                 record, report=report, target=Phase.PHASE2_COMPLETE, backup=backup)

        starting_phase = record.phase
        if record.phase == Phase.MONITORING:
            record = self._advance(record, Phase.PHASE2_APPROVED, now)
            self.store.save_record(record, now)
            self._audit(record, actor, "phase2_approved", {"backup_id": backup.id}, now)
            logger.log_transition(record.id, element.key, Phase.MONITORING.value, Phase.PHASE2_APPROVED.value)

        return self._drop(record, report, backup, actor, evaluated_at=now, from_phase=starting_phase)

    def _drop(self, record: DeprecationRecord, report: SafetyReport, backup: BackupRecord,
              actor: str, evaluated_at: datetime, from_phase: Phase) -> TransitionResult:
        element = record.element
        now = self.clock()
        script = self.rollback_manager.plan(record, MODE_RESTORE)
        completed = self._advance(record, Phase.PHASE2_COMPLETE, now, rollback_script_id=script.id)
        statement = self._drop_statement(record)

        # events queued before the drop must be visible to the race check
        self.monitor.flush()
        with self._destructive:
            conn = self._connect_target()
            try:
                schema = attach_metadata(conn, self.metadata_path)
                with transaction(conn):
                    events = self.store.count_access_since(element.key, evaluated_at, conn, schema)
                    if events:
                        raise _AccessRace(events)
                    conn.execute(statement)
                    self.store.save_record(completed, now, conn, schema)
                    self.store.save_rollback_script(script, conn, schema)
                    self.store.append_audit(completed.id, actor, "phase2_executed", {
                        "statement": statement, "backup_id": backup.id, "rollback_script_id": script.id,
                    }, now, conn, schema)
            except _AccessRace as race:
                return self._handle_access_race(record, race.events, evaluated_at, actor)
            except sqlite3.Error as e:
                return self._failure(DestructiveOperationError(f"Drop of {element.display} failed: {e}", statement),
                                     record, report=report, target=Phase.PHASE2_COMPLETE, backup=backup)
            finally:
                conn.close()

        self.monitor.unwatch(element)
        logger.log_transition(completed.id, element.key, Phase.PHASE2_APPROVED.value, Phase.PHASE2_COMPLETE.value,
                              details={"backup_id": backup.id})
        audit_event(
            event_type="deprecation_phase2_executed",
            identifiers={"deprecation_id": completed.id, "element": element.key},
            payload={"statement": statement, "backup_id": backup.id},
        )
        return TransitionResult(
            success=True, deprecation_id=completed.id, element_key=element.key,
            from_phase=from_phase, to_phase=Phase.PHASE2_COMPLETE,
            record=completed, report=report, backup=backup,
        )

    def _handle_access_race(self, record: DeprecationRecord, events: int, evaluated_at: datetime,
                            actor: str) -> TransitionResult:
        """Access after the evaluation: invalidate approvals and return to monitoring."""
        now = self.clock()
        error = AccessRaceError(record.element.key, events)
        reverted = self._advance(record, Phase.MONITORING, now)
        race_result = SafetyCheckResult(
            check_name="access-race", severity=Severity.CRITICAL, passed=False,
            message=error.message, timestamp=now, remediation=error.remediation,
            details={"events": events, "evaluated_at": evaluated_at.isoformat()},
        )
        race_report = SafetyReport(element_key=record.element.key, phase=2, results=[race_result],
                                   risk_level=RiskLevel.CRITICAL, evaluated_at=now)

        with self.store_transaction() as (conn, schema):
            invalidated = self.store.invalidate_approvals(record.id, conn, schema)
            self.store.save_safety_report(record.id, uuid.uuid4().hex, race_report, conn, schema)
            self.store.save_record(replace(reverted, risk_level=RiskLevel.CRITICAL), now, conn, schema)
            self.store.append_audit(record.id, actor, "access_race", {
                "events": events, "approvals_invalidated": invalidated,
            }, now, conn, schema)

        logger.log_access_alert(record.element.key, events, {"after_evaluation": events})
        reverted = self._load(record.id)
        return self._failure(error, reverted, report=race_report, target=Phase.PHASE2_COMPLETE)

    @contextmanager
    def store_transaction(self):
        """Metadata-only transaction on the store's own connection."""
        with get_db(self.metadata_path) as conn:
            with transaction(conn):
                yield conn, "main"

    # Rollback

    def rollback(self, deprecation_id: str, reason: str, requested_by: str = "system") -> TransitionResult:
        """Any non-terminal phase (or phase2_complete within the emergency window) -> rolled_back."""
        try:
            record = self._load(deprecation_id)
            with self._element_lock(record.element.key):
                return self._rollback(self._load(deprecation_id), reason, requested_by)
        except DeprecationError as e:
            return self._failure(e, element_key=deprecation_id)

    def _rollback(self, record: DeprecationRecord, reason: str, actor: str) -> TransitionResult:
        now = self.clock()
        if not reason or not reason.strip():
            return self._failure(InvalidTransitionError("A rollback reason is required",
                                                        current_phase=record.phase.value), record)
        if not can_transition(record.phase, Phase.ROLLED_BACK):
            return self._failure(InvalidTransitionError(
                f"{record.id} is {record.phase.value} and cannot be rolled back",
                current_phase=record.phase.value,
            ), record, target=Phase.ROLLED_BACK)

        if record.phase == Phase.PHASE2_COMPLETE:
            policy = self._policy(record)
            completed_at = record.entered(Phase.PHASE2_COMPLETE)
            if completed_at and now - completed_at > timedelta(hours=policy.emergency_rollback_hours):
                return self._failure(RollbackWindowExpiredError(record.id, policy.emergency_rollback_hours),
                                     record, target=Phase.ROLLED_BACK)

        try:
            plan = self.rollback_manager.script_for(record)
        except ValueError as e:
            return self._failure(InvalidTransitionError(f"Cannot plan rollback: {e}",
                                                        current_phase=record.phase.value), record)

        rolled_back = self._advance(record, Phase.ROLLED_BACK, now, rollback_reason=reason.strip())

        def finalize(conn: sqlite3.Connection, schema: str):
            self.store.save_record(rolled_back, now, conn, schema)
            self.store.append_audit(record.id, actor, "rolled_back", {
                "reason": reason, "mode": plan.mode, "from_phase": record.phase.value,
            }, now, conn, schema)

        try:
            with self._destructive:
                result = self.rollback_manager.execute(plan, finalize)
        except DeprecationError as e:
            # RollbackFailedError included: surfaced to the operator, never retried here
            return self._failure(e, record, target=Phase.ROLLED_BACK)

        self.monitor.unwatch(record.element)
        logger.log_transition(record.id, record.element.key, record.phase.value, Phase.ROLLED_BACK.value,
                              details={"mode": plan.mode, "reason": reason})
        audit_event(
            event_type="deprecation_rolled_back",
            identifiers={"deprecation_id": record.id, "element": record.element.key},
            payload={"mode": plan.mode, "steps": result.total_steps, "reason": reason},
        )
        return TransitionResult(
            success=True, deprecation_id=record.id, element_key=record.element.key,
            from_phase=record.phase, to_phase=Phase.ROLLED_BACK, record=rolled_back, rollback=result,
        )

    # Housekeeping

    def promote_due(self) -> int:
        """Move every phase1_active record whose grace period has passed into monitoring."""
        promoted = 0
        for record in self.store.list_records(phases=[Phase.PHASE1_ACTIVE]):
            try:
                with self._element_lock(record.element.key):
                    current = self._load(record.id)
                    if self._promote_if_due(current, self.clock()).phase == Phase.MONITORING:
                        promoted += 1
            except TransitionInProgressError:
                logger.info(f"Skipping promotion of {record.id}; a transition is in progress")
        return promoted

    def list_records(self, active_only: bool = False) -> List[DeprecationRecord]:
        return self.store.list_records(active_only=active_only)

    def resume_monitoring(self) -> int:
        """Watch the visible names of every renamed element (after a restart)."""
        count = 0
        for record in self.store.list_records(active_only=True):
            if record.deprecated_name and record.phase != Phase.PROPOSED:
                self.monitor.watch(record.element, record.deprecated_name)
                count += 1
        return count

    def naming_summary(self) -> Dict[str, Any]:
        """Deprecated-name statistics over the live schema."""
        try:
            names = self.catalog.list_names()
        except CatalogUnavailableError as e:
            return {"error": e.to_dict()}
        return summarize_names(names, self.clock())
