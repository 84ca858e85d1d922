"""
Rollback planning and execution.

Plans are derived from the DeprecationRecord and the dependency snapshot taken
at Phase 1, never from the live catalog. Execution runs every step in one
transaction; a failure anywhere rolls the whole restoration back.
"""

import sqlite3
import time
import uuid
from datetime import datetime
from graphlib import CycleError, TopologicalSorter
from typing import Callable, Dict, List, Optional, Set, Tuple

from .backup import BackupValidator, Statement
from .catalog import retarget_ddl, with_if_not_exists
from .dao import DeprecationStore
from .db import attach_metadata, quote_identifier, transaction
from .errors import BackupUnavailableError, RollbackFailedError
from .schema import (
    DeprecationRecord,
    ElementKind,
    Phase,
    RollbackPlan,
    RollbackResult,
    RollbackStep,
)

from util.logging import logger

MODE_NOOP = "noop"
MODE_REVERSE_RENAME = "reverse_rename"
MODE_RESTORE = "restore_from_backup"

Finalizer = Callable[[sqlite3.Connection, str], None]


class PrerequisiteMissingError(Exception):
    """A rollback step's required objects do not exist yet."""
    pass


def expected_mode(record: DeprecationRecord) -> str:
    if record.phase == Phase.PROPOSED:
        return MODE_NOOP
    if record.phase == Phase.PHASE2_COMPLETE:
        return MODE_RESTORE
    return MODE_REVERSE_RENAME


class RollbackManager:
    """Builds and runs restoration plans."""

    def __init__(self, store: DeprecationStore, backups: BackupValidator,
                 connect_target: Callable[[], sqlite3.Connection], metadata_path: str,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.backups = backups
        self._connect = connect_target
        self.metadata_path = metadata_path
        self.clock = clock

    # Planning

    def plan(self, record: DeprecationRecord, mode: Optional[str] = None) -> RollbackPlan:
        """
        Build the restoration plan for a record in its current phase.

        Args:
            record: Deprecation record
            mode: Force a mode (used to store the Phase 2 plan before the drop commits)
        """
        mode = mode or expected_mode(record)
        if mode == MODE_NOOP:
            steps: List[RollbackStep] = []
        elif mode == MODE_REVERSE_RENAME:
            steps = self._reverse_rename_steps(record)
        else:
            steps = self._restore_steps(record)

        return RollbackPlan(
            id=f"rb_{uuid.uuid4().hex[:12]}",
            deprecation_id=record.id,
            mode=mode,
            steps=steps,
            created_at=self.clock(),
        )

    def script_for(self, record: DeprecationRecord) -> RollbackPlan:
        """Stored restoration script for the record, or a fresh plan if none matches its phase."""
        mode = expected_mode(record)
        if record.rollback_script_id:
            stored = self.store.get_rollback_script(record.rollback_script_id)
            if stored is not None and stored.mode == mode:
                return stored
        return self.plan(record, mode)

    def _reverse_rename_steps(self, record: DeprecationRecord) -> List[RollbackStep]:
        element = record.element
        deprecated = record.deprecated_name
        original = record.original_name

        if element.kind == ElementKind.TABLE:
            statements = [f"ALTER TABLE {quote_identifier(deprecated)} RENAME TO {quote_identifier(original)}"]
            requires = [deprecated]
        elif element.kind == ElementKind.COLUMN:
            statements = [
                f"ALTER TABLE {quote_identifier(element.owner)} "
                f"RENAME COLUMN {quote_identifier(deprecated)} TO {quote_identifier(original)}"
            ]
            requires = [element.owner]
        else:
            if not record.element_sql:
                raise ValueError(f"No captured definition for index {original}")
            statements = [
                f"DROP INDEX {quote_identifier(deprecated)}",
                retarget_ddl(record.element_sql[0], original),
            ]
            requires = [deprecated]

        return [RollbackStep(
            order=1,
            description=f"Rename {deprecated} back to {original}",
            statements=statements,
            target=original,
            requires=requires,
        )]

    def _restore_steps(self, record: DeprecationRecord) -> List[RollbackStep]:
        element = record.element
        original = record.original_name
        if not record.backup_id:
            raise ValueError(f"Record {record.id} has no backup to restore from")

        root = f"{element.kind.value}:{original}"
        steps = [RollbackStep(
            order=1,
            description=f"Restore {element.display} from backup {record.backup_id}",
            statements=[],
            target=original,
            requires=[element.owner] if element.owner else [],
            backup_id=record.backup_id,
        )]

        # Only objects with a captured definition can be recreated; foreign keys live
        # inside their table's DDL and come back with it.
        restorable = {d.name: d for d in record.dependency_snapshot if d.definition}
        graph: Dict[str, Set[str]] = {root: set()}
        for dependent in restorable.values():
            parent = dependent.depends_on if dependent.depth > 1 and dependent.depends_on in restorable else root
            graph.setdefault(dependent.name, set()).add(parent)

        try:
            order = [name for name in TopologicalSorter(graph).static_order() if name != root]
        except CycleError as e:
            raise ValueError(f"Dependency snapshot for {record.id} contains a cycle: {e.args[1]}")

        for name in order:
            dependent = restorable[name]
            requires = [original] if element.kind == ElementKind.TABLE else [element.owner] if element.owner else []
            if dependent.depth > 1 and dependent.depends_on in restorable:
                requires = requires + [dependent.depends_on]
            if dependent.owner and dependent.owner not in requires:
                requires.append(dependent.owner)
            steps.append(RollbackStep(
                order=len(steps) + 1,
                description=f"Recreate {dependent.label}",
                statements=[with_if_not_exists(dependent.definition)],
                target=dependent.name,
                requires=requires,
            ))
        return steps

    # Execution

    def _resolve(self, plan: RollbackPlan) -> List[Tuple[RollbackStep, List[Statement]]]:
        resolved = []
        for step in sorted(plan.steps, key=lambda s: s.order):
            statements: List[Statement] = [(sql, ()) for sql in step.statements]
            if step.backup_id:
                try:
                    statements = self.backups.restoration_statements(step.backup_id, step.target) + statements
                except BackupUnavailableError as e:
                    raise RollbackFailedError(
                        f"Cannot load restoration data for step {step.order}: {e.message}",
                        last_successful_step=None, failed_step=step.order,
                    )
            resolved.append((step, statements))
        return resolved

    @staticmethod
    def _exists(conn: sqlite3.Connection, name: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM main.sqlite_master WHERE lower(name) = lower(?)", (name,)
        ).fetchone()
        return row is not None

    def execute(self, plan: RollbackPlan, finalize: Optional[Finalizer] = None) -> RollbackResult:
        """
        Execute a plan in one transaction.

        Args:
            plan: Plan from plan() or script_for()
            finalize: Called with (connection, metadata schema) inside the transaction, before commit

        Raises:
            RollbackFailedError: if any step fails; nothing is applied
        """
        started = time.monotonic()
        resolved = self._resolve(plan)
        completed: List[int] = []
        descriptions: List[str] = []
        current: Optional[RollbackStep] = None

        conn = self._connect()
        try:
            schema = attach_metadata(conn, self.metadata_path) if finalize else "main"
            with transaction(conn):
                for step, statements in resolved:
                    current = step
                    missing = [name for name in step.requires if not self._exists(conn, name)]
                    if missing:
                        raise PrerequisiteMissingError(
                            f"step {step.order} requires {', '.join(missing)} which do not exist"
                        )
                    for sql, params in statements:
                        conn.execute(sql, params)
                    completed.append(step.order)
                    descriptions.append(step.description)
                current = None
                if finalize:
                    finalize(conn, schema)
        except (sqlite3.Error, PrerequisiteMissingError) as e:
            failed = current.order if current else None
            logger.log_rollback(plan.deprecation_id, plan.mode, "failed", {
                "failed_step": failed, "completed": completed, "error": str(e)
            })
            raise RollbackFailedError(
                f"Rollback {plan.id} failed at step {failed}: {e}",
                last_successful_step=completed[-1] if completed else None,
                failed_step=failed,
                completed_steps=descriptions,
            ) from e
        finally:
            conn.close()

        duration_ms = round((time.monotonic() - started) * 1000, 2)
        logger.log_rollback(plan.deprecation_id, plan.mode, "success", {
            "steps": len(completed), "duration_ms": duration_ms
        })
        return RollbackResult(
            plan_id=plan.id,
            success=True,
            completed_steps=completed,
            total_steps=len(plan.steps),
            duration_ms=duration_ms,
        )
