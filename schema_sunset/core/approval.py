"""
Approval workflow gating Phase 2 removals.

Each environment requires one approval per role. Decisions are appended, never
edited; the latest non-invalidated decision per role counts.
"""

import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from .config import EnvironmentPolicy
from .dao import DeprecationStore
from .errors import InvalidTransitionError
from .schema import ApprovalRecord, Decision, DeprecationRecord, Phase

from util.logging import logger, audit_event

# Phases in which approvals may be recorded
APPROVABLE_PHASES = (Phase.PHASE1_ACTIVE, Phase.MONITORING)


class ApprovalWorkflow:
    """Records approval decisions and evaluates them against an environment policy."""

    def __init__(self, store: DeprecationStore, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock

    def record_decision(self, record: DeprecationRecord, policy: EnvironmentPolicy, role: str,
                        approver: str, decision: Union[Decision, str] = Decision.APPROVE,
                        justification: str = "") -> ApprovalRecord:
        """
        Append an approval decision for one role.

        Raises:
            InvalidTransitionError: if the record is not awaiting approval or the role is not required
        """
        if record.phase not in APPROVABLE_PHASES:
            raise InvalidTransitionError(
                f"Cannot record approvals for a record in phase {record.phase.value}",
                current_phase=record.phase.value,
                remediation="Approvals are accepted after Phase 1 and before Phase 2",
            )

        role = role.strip().lower()
        if role not in policy.required_roles:
            raise InvalidTransitionError(
                f"Role '{role}' is not required in {policy.name}",
                current_phase=record.phase.value,
                remediation=f"Required roles: {', '.join(policy.required_roles)}",
            )
        if not approver or not approver.strip():
            raise ValueError("Approver identity cannot be empty")

        approval = ApprovalRecord(
            id=str(uuid.uuid4()),
            deprecation_id=record.id,
            approver=approver.strip(),
            role=role,
            decided_at=self.clock(),
            decision=Decision(decision),
            justification=justification,
        )
        self.store.save_approval(approval)

        logger.log_approval_decision(record.id, role, approval.decision.value, approval.approver, justification)
        audit_event(
            event_type="approval_recorded",
            identifiers={"deprecation_id": record.id, "approval_id": approval.id},
            payload={"role": role, "decision": approval.decision.value, "approver": approval.approver}
        )
        return approval

    @staticmethod
    def latest_decisions(approvals: List[ApprovalRecord]) -> Dict[str, ApprovalRecord]:
        """Latest valid decision per role."""
        latest: Dict[str, ApprovalRecord] = {}
        for approval in approvals:
            if approval.invalidated:
                continue
            current = latest.get(approval.role)
            if current is None or approval.decided_at >= current.decided_at:
                latest[approval.role] = approval
        return latest

    def missing_roles(self, policy: EnvironmentPolicy, approvals: List[ApprovalRecord]) -> List[str]:
        latest = self.latest_decisions(approvals)
        return [
            role for role in policy.required_roles
            if role not in latest or latest[role].decision != Decision.APPROVE
        ]

    def rejected_roles(self, policy: EnvironmentPolicy, approvals: List[ApprovalRecord]) -> List[str]:
        latest = self.latest_decisions(approvals)
        return [
            role for role in policy.required_roles
            if role in latest and latest[role].decision == Decision.REJECT
        ]

    def is_satisfied(self, policy: EnvironmentPolicy, approvals: List[ApprovalRecord]) -> bool:
        return not self.missing_roles(policy, approvals)

    def latest_approval_time(self, approvals: List[ApprovalRecord]) -> Optional[datetime]:
        """When the last counted approval was given; backups must be newer than this."""
        times = [a.decided_at for a in self.latest_decisions(approvals).values() if a.decision == Decision.APPROVE]
        return max(times) if times else None
