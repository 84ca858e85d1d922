"""
Error taxonomy for deprecation operations.

Every error carries a stable code, whether retrying can help, and a remediation
hint for the operator. The orchestrator returns these inside structured results.
"""

from typing import Any, Dict, List, Optional


class DeprecationError(Exception):
    """Base class for all deprecation engine errors."""
    code = "deprecation_error"
    retryable = False

    def __init__(self, message: str, remediation: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "remediation": self.remediation,
            "details": self.details,
        }


class SafetyViolationError(DeprecationError):
    """A phase transition was blocked by one or more critical safety checks."""
    code = "safety_violation"
    retryable = True

    def __init__(self, message: str, report=None, remediation: str = ""):
        self.report = report
        failed = report.critical_failures if report is not None else []
        if not remediation:
            remediation = "; ".join(r.remediation for r in failed if r.remediation)
        details = {"failed_checks": [r.check_name for r in failed]}
        if report is not None:
            details["report"] = report.to_dict()
        super().__init__(message, remediation, details)


class NameCollisionError(DeprecationError):
    code = "name_collision"
    retryable = True

    def __init__(self, base_name: str, attempts: int):
        super().__init__(
            f"Could not find a free deprecated name for {base_name} after {attempts} attempts",
            remediation="Choose a different reason code or retry on another day",
            details={"base_name": base_name, "attempts": attempts},
        )


class DeprecatedNameParseError(DeprecationError, ValueError):
    code = "name_parse_error"

    def __init__(self, name: str, reason: str):
        super().__init__(
            f"Not a deprecated name: {name!r} ({reason})",
            details={"name": name, "reason": reason},
        )
        self.name = name
        self.reason = reason


class CatalogUnavailableError(DeprecationError):
    code = "catalog_unavailable"
    retryable = True

    def __init__(self, message: str, remediation: str = "Check database connectivity and retry"):
        super().__init__(message, remediation)


class BackupUnavailableError(DeprecationError):
    code = "backup_unavailable"
    retryable = True

    def __init__(self, message: str, remediation: str = "Check backup storage and retry"):
        super().__init__(message, remediation)


class RollbackFailedError(DeprecationError):
    """Restoration failed and was rolled back. Needs a human, never retried automatically."""
    code = "rollback_failed"

    def __init__(self, message: str, last_successful_step: Optional[int], failed_step: Optional[int],
                 completed_steps: Optional[List[str]] = None):
        super().__init__(
            message,
            remediation="Escalate to a DBA; inspect the restoration script before any retry",
            details={
                "last_successful_step": last_successful_step,
                "failed_step": failed_step,
                "completed_steps": completed_steps or [],
            },
        )
        self.last_successful_step = last_successful_step
        self.failed_step = failed_step


class InvalidTransitionError(DeprecationError):
    code = "invalid_transition"

    def __init__(self, message: str, current_phase: Optional[str] = None, remediation: str = ""):
        super().__init__(message, remediation, {"current_phase": current_phase})


class ApprovalRequiredError(DeprecationError):
    code = "approval_required"
    retryable = True

    def __init__(self, missing_roles: List[str], rejected_roles: Optional[List[str]] = None):
        rejected_roles = rejected_roles or []
        message = f"Missing approvals for roles: {', '.join(missing_roles)}"
        if rejected_roles:
            message += f" (rejected by: {', '.join(rejected_roles)})"
        super().__init__(
            message,
            remediation="Record an approval for each listed role with the approve command",
            details={"missing_roles": missing_roles, "rejected_roles": rejected_roles},
        )
        self.missing_roles = missing_roles


class ConfirmationRequiredError(DeprecationError):
    code = "confirmation_required"

    def __init__(self):
        super().__init__(
            "Phase 2 permanently removes the element and requires explicit confirmation",
            remediation="Re-run with --confirm",
        )


class RecordNotFoundError(DeprecationError):
    code = "record_not_found"

    def __init__(self, identifier: str):
        super().__init__(f"No deprecation record found for {identifier}", details={"identifier": identifier})


class ElementNotFoundError(DeprecationError):
    code = "element_not_found"

    def __init__(self, element_key: str):
        super().__init__(
            f"Element does not exist: {element_key}",
            remediation="Check the element name and owning table",
            details={"element": element_key},
        )


class TransitionInProgressError(DeprecationError):
    code = "transition_in_progress"
    retryable = True

    def __init__(self, element_key: str, timeout: float):
        super().__init__(
            f"Another transition on {element_key} did not finish within {timeout:.0f}s",
            remediation="Wait for the running operation to finish and retry",
            details={"element": element_key},
        )


class AccessRaceError(DeprecationError):
    code = "access_race"
    retryable = True

    def __init__(self, element_key: str, events: int):
        super().__init__(
            f"{events} access event(s) observed on {element_key} after the safety evaluation",
            remediation="Investigate the new access; approvals were invalidated and must be granted again",
            details={"element": element_key, "events": events},
        )


class RollbackWindowExpiredError(DeprecationError):
    code = "rollback_window_expired"

    def __init__(self, deprecation_id: str, hours: int):
        super().__init__(
            f"Emergency rollback window of {hours}h has passed for {deprecation_id}",
            remediation="Restore manually from the retained backup file",
            details={"deprecation_id": deprecation_id, "window_hours": hours},
        )


class DestructiveOperationError(DeprecationError):
    code = "destructive_operation_failed"
    retryable = True

    def __init__(self, message: str, statement: str = ""):
        super().__init__(
            message,
            remediation="The transaction was rolled back; fix the reported database error and retry",
            details={"statement": statement},
        )
