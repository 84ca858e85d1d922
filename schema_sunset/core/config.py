"""
Runtime configuration for the deprecation engine.

Flat settings are read from environment variables once at import. Environment
policies (monitoring window, approval roles, backup retention) are loaded into
frozen objects and handed to the orchestrator explicitly.
"""

import json
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

# Storage locations
TARGET_DB_PATH = os.getenv("TARGET_DB_PATH", "./data/app.db")
METADATA_DB_PATH = os.getenv("METADATA_DB_PATH", "./data/deprecation_meta.db")
BACKUP_DIR = os.getenv("BACKUP_DIR", "./data/backups")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"
DEPRECATION_ENVIRONMENT = os.getenv("DEPRECATION_ENVIRONMENT", "development")
DEPRECATION_POLICY_FILE = os.getenv("DEPRECATION_POLICY_FILE")

# Naming
MAX_IDENTIFIER_LENGTH = int(os.getenv("MAX_IDENTIFIER_LENGTH", "63"))
NAME_COLLISION_MAX_ATTEMPTS = int(os.getenv("NAME_COLLISION_MAX_ATTEMPTS", "99"))

# Elements that may never be deprecated (comma separated, table names or table.column)
CORE_ELEMENTS = tuple(
    item.strip() for item in os.getenv("CORE_ELEMENTS", "").split(",") if item.strip()
)

# Safety checks and catalog access
SAFETY_CHECK_TIMEOUT_SEC = float(os.getenv("SAFETY_CHECK_TIMEOUT_SEC", "30"))
SAFETY_CHECK_WORKERS = int(os.getenv("SAFETY_CHECK_WORKERS", "4"))
CATALOG_RETRY_ATTEMPTS = int(os.getenv("CATALOG_RETRY_ATTEMPTS", "1"))
CATALOG_RETRY_BACKOFF_SEC = float(os.getenv("CATALOG_RETRY_BACKOFF_SEC", "0.5"))

# Backups
BACKUP_ENCRYPTION_ENABLED = os.getenv("BACKUP_ENCRYPTION_ENABLED", "true").lower() == "true"
BACKUP_MAX_AGE_HOURS = int(os.getenv("BACKUP_MAX_AGE_HOURS", "24"))
BACKUP_TIMEOUT_SEC = float(os.getenv("BACKUP_TIMEOUT_SEC", "600"))
BACKUP_TRIAL_RESTORE = os.getenv("BACKUP_TRIAL_RESTORE", "true").lower() == "true"
BACKUP_MASTER_PASSWORD = os.getenv("BACKUP_MASTER_PASSWORD", "default_master_key_change_in_production")

# Access monitor
MONITOR_ENABLED = os.getenv("MONITOR_ENABLED", "true").lower() == "true"
MONITOR_FLUSH_INTERVAL_SEC = float(os.getenv("MONITOR_FLUSH_INTERVAL_SEC", "5"))
MONITOR_BATCH_SIZE = int(os.getenv("MONITOR_BATCH_SIZE", "100"))
MONITOR_QUEUE_MAX = int(os.getenv("MONITOR_QUEUE_MAX", "10000"))
MONITOR_RETENTION_DAYS = int(os.getenv("MONITOR_RETENTION_DAYS", "90"))

# Orchestrator resource bounds
MAX_CONCURRENT_DESTRUCTIVE_OPS = int(os.getenv("MAX_CONCURRENT_DESTRUCTIVE_OPS", "2"))
TRANSITION_LOCK_TIMEOUT_SEC = float(os.getenv("TRANSITION_LOCK_TIMEOUT_SEC", "30"))

# Periodic maintenance
HEARTBEAT_ENABLED = os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"
HEARTBEAT_INTERVAL_SEC = int(os.getenv("HEARTBEAT_INTERVAL_SEC", "60"))

VERSION = "1.0.0"

VALID_ENVIRONMENTS = ("development", "test", "staging", "production")


@dataclass(frozen=True)
class EnvironmentPolicy:
    """Deprecation policy for one deployment environment."""
    name: str
    min_monitoring_days: int
    required_roles: Tuple[str, ...]
    backup_retention_days: int
    access_window_days: int
    monitoring_grace_hours: int = 1
    emergency_rollback_hours: int = 72

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["required_roles"] = list(self.required_roles)
        return data


REFERENCE_POLICIES = {
    "development": EnvironmentPolicy(
        name="development",
        min_monitoring_days=7,
        required_roles=("dba",),
        backup_retention_days=7,
        access_window_days=7,
    ),
    "test": EnvironmentPolicy(
        name="test",
        min_monitoring_days=1,
        required_roles=("dba",),
        backup_retention_days=3,
        access_window_days=1,
        monitoring_grace_hours=0,
    ),
    "staging": EnvironmentPolicy(
        name="staging",
        min_monitoring_days=14,
        required_roles=("dba", "tech_lead"),
        backup_retention_days=30,
        access_window_days=14,
        monitoring_grace_hours=24,
    ),
    "production": EnvironmentPolicy(
        name="production",
        min_monitoring_days=30,
        required_roles=("dba", "tech_lead", "product_owner"),
        backup_retention_days=90,
        access_window_days=30,
        monitoring_grace_hours=24,
        emergency_rollback_hours=168,
    ),
}


class PolicyOverride(BaseModel):
    """One environment entry of a policy override file."""
    model_config = ConfigDict(extra="forbid")

    min_monitoring_days: Optional[int] = None
    required_roles: Optional[List[str]] = None
    backup_retention_days: Optional[int] = None
    access_window_days: Optional[int] = None
    monitoring_grace_hours: Optional[int] = None
    emergency_rollback_hours: Optional[int] = None

    @field_validator('min_monitoring_days', 'backup_retention_days', 'access_window_days',
                     'monitoring_grace_hours', 'emergency_rollback_hours')
    @classmethod
    def must_not_be_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError('value must be >= 0')
        return v

    @field_validator('required_roles')
    @classmethod
    def roles_must_not_be_empty(cls, v):
        if v is not None and not [role for role in v if role.strip()]:
            raise ValueError('required_roles cannot be empty')
        return v


def load_policies(path: Optional[str] = None) -> Mapping[str, EnvironmentPolicy]:
    """
    Load environment policies, applying overrides from a JSON file if given.

    The file maps environment names to partial policies, e.g.
    {"production": {"min_monitoring_days": 45}}.

    Returns:
        Read-only mapping of environment name to EnvironmentPolicy
    """
    policies = dict(REFERENCE_POLICIES)
    path = path or DEPRECATION_POLICY_FILE

    if path:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"Policy file must contain an object: {path}")

        for env_name, entry in raw.items():
            if env_name not in VALID_ENVIRONMENTS:
                raise ValueError(f"Unknown environment in policy file: {env_name}")
            try:
                override = PolicyOverride(**entry)
            except ValidationError as e:
                raise ValueError(f"Invalid policy for {env_name}: {e}") from e

            values = policies[env_name].to_dict()
            values.update(override.model_dump(exclude_none=True))
            values["required_roles"] = tuple(role.strip() for role in values["required_roles"])
            policies[env_name] = EnvironmentPolicy(**values)

    return MappingProxyType(policies)


def get_policy(environment: str, policies: Optional[Mapping[str, EnvironmentPolicy]] = None) -> EnvironmentPolicy:
    """Get the policy for one environment."""
    policies = policies if policies is not None else REFERENCE_POLICIES
    if environment not in policies:
        raise ValueError(f"Unknown environment: {environment}. Valid: {list(policies)}")
    return policies[environment]


def ensure_data_directories():
    """Ensure the metadata, target and backup directories exist."""
    for path in (METADATA_DB_PATH, TARGET_DB_PATH):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    Path(BACKUP_DIR).mkdir(parents=True, exist_ok=True)


def is_heartbeat_enabled():
    """Check if the maintenance heartbeat is enabled."""
    return HEARTBEAT_ENABLED


def get_heartbeat_interval():
    """Get heartbeat interval in seconds."""
    return HEARTBEAT_INTERVAL_SEC


def validate_heartbeat_config():
    """Validate heartbeat configuration and return any issues."""
    issues = []

    if HEARTBEAT_INTERVAL_SEC < 1:
        issues.append("HEARTBEAT_INTERVAL_SEC must be >= 1")

    return issues


def validate_config(policies: Optional[Mapping[str, EnvironmentPolicy]] = None) -> List[str]:
    """Validate engine configuration and return any issues."""
    policies = policies if policies is not None else REFERENCE_POLICIES
    issues = []

    if DEPRECATION_ENVIRONMENT not in VALID_ENVIRONMENTS:
        issues.append(f"Invalid DEPRECATION_ENVIRONMENT: {DEPRECATION_ENVIRONMENT}")

    if os.path.abspath(METADATA_DB_PATH) == os.path.abspath(TARGET_DB_PATH):
        issues.append("METADATA_DB_PATH must not be the target database")

    if MAX_IDENTIFIER_LENGTH < 32:
        issues.append("MAX_IDENTIFIER_LENGTH must be >= 32")

    if not 1 <= NAME_COLLISION_MAX_ATTEMPTS <= 99:
        issues.append("NAME_COLLISION_MAX_ATTEMPTS must be between 1 and 99")

    if not 1 <= MAX_CONCURRENT_DESTRUCTIVE_OPS <= 3:
        issues.append("MAX_CONCURRENT_DESTRUCTIVE_OPS must be between 1 and 3")

    if SAFETY_CHECK_TIMEOUT_SEC <= 0:
        issues.append("SAFETY_CHECK_TIMEOUT_SEC must be > 0")

    if SAFETY_CHECK_WORKERS < 1:
        issues.append("SAFETY_CHECK_WORKERS must be >= 1")

    if MONITOR_BATCH_SIZE < 1:
        issues.append("MONITOR_BATCH_SIZE must be >= 1")

    for policy in policies.values():
        if not policy.required_roles:
            issues.append(f"{policy.name}: at least one approval role is required")
        if policy.access_window_days > policy.min_monitoring_days:
            issues.append(f"{policy.name}: access window exceeds the monitoring window")

    production = policies.get("production")
    if production is not None:
        if not BACKUP_ENCRYPTION_ENABLED:
            issues.append("production: backups should be encrypted (BACKUP_ENCRYPTION_ENABLED=true)")
        if production.backup_retention_days < production.min_monitoring_days:
            issues.append("production: backup retention is shorter than the monitoring window")

    issues.extend(validate_heartbeat_config())
    return issues
