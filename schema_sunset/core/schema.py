"""
Data model for the deprecation engine: elements, lifecycle records, access events,
safety results, backups, approvals and rollback plans.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ElementKind(str, Enum):
    TABLE = "table"
    COLUMN = "column"
    INDEX = "index"


class ReasonCode(str, Enum):
    UNUSED = "unused"
    PERFORMANCE = "performance"
    MIGRATION = "migration"
    REFACTOR = "refactor"
    SECURITY = "security"
    OPTIMIZATION = "optimization"


class Phase(str, Enum):
    PROPOSED = "proposed"
    PHASE1_ACTIVE = "phase1_active"
    MONITORING = "monitoring"
    PHASE2_APPROVED = "phase2_approved"
    PHASE2_COMPLETE = "phase2_complete"
    ROLLED_BACK = "rolled_back"


TERMINAL_PHASES = frozenset({Phase.PHASE2_COMPLETE, Phase.ROLLED_BACK})

# Closed transition table; anything not listed is rejected.
ALLOWED_TRANSITIONS = {
    Phase.PROPOSED: frozenset({Phase.PHASE1_ACTIVE, Phase.ROLLED_BACK}),
    Phase.PHASE1_ACTIVE: frozenset({Phase.MONITORING, Phase.ROLLED_BACK}),
    Phase.MONITORING: frozenset({Phase.PHASE2_APPROVED, Phase.ROLLED_BACK}),
    # back to monitoring when access is observed after the approval evaluation
    Phase.PHASE2_APPROVED: frozenset({Phase.PHASE2_COMPLETE, Phase.MONITORING, Phase.ROLLED_BACK}),
    # emergency rollback only, restored from backup
    Phase.PHASE2_COMPLETE: frozenset({Phase.ROLLED_BACK}),
    Phase.ROLLED_BACK: frozenset(),
}


def can_transition(current: Phase, target: Phase) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return ["low", "medium", "high", "critical"].index(self.value)

    @classmethod
    def worst(cls, *levels: "RiskLevel") -> "RiskLevel":
        return max(levels, key=lambda level: level.rank)


class AccessOperation(str, Enum):
    READ = "read"
    WRITE = "write"


class AccessSource(str, Enum):
    APPLICATION = "application"
    MIGRATION = "migration"
    ADMIN = "admin"
    UNKNOWN = "unknown"


class BackupStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class DependencyKind(str, Enum):
    FOREIGN_KEY = "foreign_key"
    VIEW = "view"
    TRIGGER = "trigger"
    STORED_FUNCTION = "stored_function"
    INDEX = "index"


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Element:
    """A named schema object. Identity never changes; only its visible name does."""
    kind: ElementKind
    name: str
    owner: Optional[str] = None  # owning table for columns and indexes

    def __post_init__(self):
        object.__setattr__(self, "kind", ElementKind(self.kind))
        if self.kind == ElementKind.COLUMN and not self.owner:
            raise ValueError(f"Column element {self.name} needs an owning table")

    @property
    def key(self) -> str:
        if self.kind == ElementKind.COLUMN:
            return f"column:{self.owner}.{self.name}"
        return f"{self.kind.value}:{self.name}"

    @property
    def display(self) -> str:
        if self.kind == ElementKind.COLUMN:
            return f"{self.owner}.{self.name}"
        return self.name

    @classmethod
    def parse(cls, text: str) -> "Element":
        """
        Parse an element reference.

        Accepted forms: "orders", "table:orders", "orders.legacy_flag",
        "column:orders.legacy_flag", "index:idx_orders_date" and
        "index:orders.idx_orders_date".
        """
        text = text.strip()
        kind = None
        if ":" in text:
            prefix, text = text.split(":", 1)
            kind = ElementKind(prefix.lower())

        owner, _, name = text.rpartition(".")
        if kind is None:
            kind = ElementKind.COLUMN if owner else ElementKind.TABLE
        if kind == ElementKind.TABLE and owner:
            raise ValueError(f"Table reference cannot have an owner: {text}")
        if not name:
            raise ValueError(f"Empty element name: {text}")
        return cls(kind=kind, name=name, owner=owner or None)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "name": self.name, "owner": self.owner}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Element":
        return cls(kind=ElementKind(data["kind"]), name=data["name"], owner=data.get("owner"))


@dataclass
class Dependent:
    """Something in the catalog that references an element."""
    name: str
    kind: DependencyKind
    depends_on: str
    owner: Optional[str] = None
    definition: Optional[str] = None
    depth: int = 1
    owned: bool = False  # defined on the element itself, removed with it
    deprecated: bool = False

    @property
    def active(self) -> bool:
        return not self.deprecated

    @property
    def label(self) -> str:
        kind = {
            DependencyKind.FOREIGN_KEY: "fk",
            DependencyKind.STORED_FUNCTION: "function",
        }.get(self.kind, self.kind.value)
        return f"{kind} {self.name}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dependent":
        data = dict(data)
        data["kind"] = DependencyKind(data["kind"])
        return cls(**data)


@dataclass
class AccessEvent:
    element: Element
    operation: AccessOperation
    source: AccessSource
    timestamp: datetime
    latency_ms: Optional[float] = None
    source_identifier: Optional[str] = None


@dataclass
class AccessStats:
    element_key: str
    window_days: float
    total_events: int = 0
    by_source: Dict[str, int] = field(default_factory=dict)
    by_operation: Dict[str, int] = field(default_factory=dict)
    last_seen: Optional[datetime] = None
    average_latency_ms: Optional[float] = None

    @property
    def only_maintenance_sources(self) -> bool:
        """True when every observed access came from migrations or admins."""
        return self.total_events > 0 and set(self.by_source) <= {
            AccessSource.MIGRATION.value, AccessSource.ADMIN.value
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "element": self.element_key,
            "window_days": self.window_days,
            "total_events": self.total_events,
            "by_source": self.by_source,
            "by_operation": self.by_operation,
            "last_seen": _iso(self.last_seen) or "never",
            "average_latency_ms": self.average_latency_ms,
        }


@dataclass
class SafetyCheckResult:
    check_name: str
    severity: Severity
    passed: bool
    message: str
    timestamp: datetime
    remediation: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_critical_failure(self) -> bool:
        return not self.passed and self.severity == Severity.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_name": self.check_name,
            "severity": self.severity.value,
            "passed": self.passed,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "remediation": self.remediation,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SafetyCheckResult":
        return cls(
            check_name=data["check_name"],
            severity=Severity(data["severity"]),
            passed=bool(data["passed"]),
            message=data["message"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            remediation=data.get("remediation", ""),
            details=data.get("details") or {},
        )


@dataclass
class SafetyReport:
    """All results from one run of the safety checks."""
    element_key: str
    phase: int
    results: List[SafetyCheckResult]
    risk_level: RiskLevel
    evaluated_at: datetime
    dependents: List[Dependent] = field(default_factory=list)

    @property
    def critical_failures(self) -> List[SafetyCheckResult]:
        return [r for r in self.results if r.is_critical_failure]

    @property
    def passed(self) -> bool:
        return not self.critical_failures and self.risk_level != RiskLevel.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "element": self.element_key,
            "phase": self.phase,
            "passed": self.passed,
            "risk_level": self.risk_level.value,
            "evaluated_at": self.evaluated_at.isoformat(),
            "results": [r.to_dict() for r in self.results],
            "dependents": [d.to_dict() for d in self.dependents],
        }


@dataclass
class BackupRecord:
    id: str
    element_key: str
    created_at: datetime
    checksum: str
    status: BackupStatus
    location: str
    expires_at: datetime
    encrypted: bool = False
    row_count: int = 0
    diagnostic: str = ""
    verified_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.status == BackupStatus.EXPIRED or now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["expires_at"] = self.expires_at.isoformat()
        data["verified_at"] = _iso(self.verified_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupRecord":
        data = dict(data)
        data["status"] = BackupStatus(data["status"])
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["expires_at"] = datetime.fromisoformat(data["expires_at"])
        data["verified_at"] = _dt(data.get("verified_at"))
        data["encrypted"] = bool(data.get("encrypted"))
        return cls(**data)


@dataclass
class ApprovalRecord:
    id: str
    deprecation_id: str
    approver: str
    role: str
    decided_at: datetime
    decision: Decision
    justification: str = ""
    invalidated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["decision"] = self.decision.value
        data["decided_at"] = self.decided_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRecord":
        data = dict(data)
        data["decision"] = Decision(data["decision"])
        data["decided_at"] = datetime.fromisoformat(data["decided_at"])
        data["invalidated"] = bool(data.get("invalidated"))
        return cls(**data)


@dataclass
class DeprecationRecord:
    """Lifecycle record for one deprecation action."""
    id: str
    element: Element
    original_name: str
    reason: ReasonCode
    created_by: str
    environment: str
    phase: Phase = Phase.PROPOSED
    deprecated_name: Optional[str] = None
    phase_timestamps: Dict[Phase, datetime] = field(default_factory=dict)
    backup_id: Optional[str] = None
    rollback_script_id: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    dependency_snapshot: List[Dependent] = field(default_factory=list)
    element_sql: List[str] = field(default_factory=list)
    rollback_reason: Optional[str] = None
    # populated from the store, not persisted on the record row
    safety_attempts: List[SafetyReport] = field(default_factory=list)
    approvals: List[ApprovalRecord] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    @property
    def live_name(self) -> str:
        """Name under which the element is currently visible in the schema."""
        if self.deprecated_name and self.phase in (
            Phase.PHASE1_ACTIVE, Phase.MONITORING, Phase.PHASE2_APPROVED
        ):
            return self.deprecated_name
        return self.original_name

    def entered(self, phase: Phase) -> Optional[datetime]:
        return self.phase_timestamps.get(phase)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "element": self.element.to_dict(),
            "element_key": self.element.key,
            "original_name": self.original_name,
            "deprecated_name": self.deprecated_name,
            "reason": self.reason.value,
            "created_by": self.created_by,
            "environment": self.environment,
            "phase": self.phase.value,
            "phase_timestamps": {p.value: ts.isoformat() for p, ts in self.phase_timestamps.items()},
            "backup_id": self.backup_id,
            "rollback_script_id": self.rollback_script_id,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "dependency_snapshot": [d.to_dict() for d in self.dependency_snapshot],
            "element_sql": self.element_sql,
            "rollback_reason": self.rollback_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeprecationRecord":
        return cls(
            id=data["id"],
            element=Element.from_dict(data["element"]),
            original_name=data["original_name"],
            deprecated_name=data.get("deprecated_name"),
            reason=ReasonCode(data["reason"]),
            created_by=data["created_by"],
            environment=data["environment"],
            phase=Phase(data["phase"]),
            phase_timestamps={
                Phase(p): datetime.fromisoformat(ts) for p, ts in (data.get("phase_timestamps") or {}).items()
            },
            backup_id=data.get("backup_id"),
            rollback_script_id=data.get("rollback_script_id"),
            risk_level=RiskLevel(data["risk_level"]) if data.get("risk_level") else None,
            dependency_snapshot=[Dependent.from_dict(d) for d in data.get("dependency_snapshot") or []],
            element_sql=list(data.get("element_sql") or []),
            rollback_reason=data.get("rollback_reason"),
        )


@dataclass
class RollbackStep:
    order: int
    description: str
    statements: List[str]
    target: str
    requires: List[str] = field(default_factory=list)
    backup_id: Optional[str] = None  # data statements are loaded from this backup at execution

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackStep":
        return cls(**data)


@dataclass
class RollbackPlan:
    id: str
    deprecation_id: str
    mode: str  # noop, reverse_rename, restore_from_backup
    steps: List[RollbackStep]
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deprecation_id": self.deprecation_id,
            "mode": self.mode,
            "steps": [s.to_dict() for s in self.steps],
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackPlan":
        return cls(
            id=data["id"],
            deprecation_id=data["deprecation_id"],
            mode=data["mode"],
            steps=[RollbackStep.from_dict(s) for s in data["steps"]],
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class RollbackResult:
    plan_id: str
    success: bool
    completed_steps: List[int]
    total_steps: int
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
