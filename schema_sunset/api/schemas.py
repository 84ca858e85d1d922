"""
Request and response models for the deprecation HTTP API.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any

from ..core.config import VALID_ENVIRONMENTS
from ..core.schema import AccessOperation, AccessSource, Decision, ReasonCode


class PlanRequest(BaseModel):
    elements: List[str]
    reason: ReasonCode
    environment: Optional[str] = None
    created_by: str = "system"

    @field_validator('elements')
    @classmethod
    def elements_must_not_be_empty(cls, v):
        cleaned = [e.strip() for e in v if e.strip()]
        if not cleaned:
            raise ValueError('at least one element is required')
        return cleaned

    @field_validator('environment')
    @classmethod
    def environment_must_be_valid(cls, v):
        if v is not None and v not in VALID_ENVIRONMENTS:
            raise ValueError(f'environment must be one of: {list(VALID_ENVIRONMENTS)}')
        return v


class PlanResponse(BaseModel):
    results: List[Dict[str, Any]]


class Phase1Request(BaseModel):
    executed_by: Optional[str] = None


class ApproveRequest(BaseModel):
    role: str
    approver: str
    decision: Decision = Decision.APPROVE
    justification: str = ""

    @field_validator('role', 'approver')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('value cannot be empty')
        return v.strip()


class Phase2Request(BaseModel):
    confirm: bool = False
    executed_by: str = "system"


class RollbackRequest(BaseModel):
    reason: str
    requested_by: str = "system"

    @field_validator('reason')
    @classmethod
    def reason_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('reason cannot be empty')
        return v


class BackupRequest(BaseModel):
    verify: bool = True


class AccessEventRequest(BaseModel):
    """One observed access, reported by the visible name the query used."""
    name: str
    owner: Optional[str] = None
    operation: AccessOperation = AccessOperation.READ
    source: AccessSource = AccessSource.UNKNOWN
    latency_ms: Optional[float] = None
    source_identifier: Optional[str] = None

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('name cannot be empty')
        return v.strip()

    @field_validator('latency_ms')
    @classmethod
    def latency_must_not_be_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError('latency_ms must be >= 0')
        return v


class QueryAccessRequest(BaseModel):
    """A SQL statement seen by a query observer."""
    sql: str
    source: AccessSource = AccessSource.UNKNOWN
    latency_ms: Optional[float] = None
    source_identifier: Optional[str] = "query-interceptor"

    @field_validator('sql')
    @classmethod
    def sql_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('sql cannot be empty')
        return v

    @field_validator('latency_ms')
    @classmethod
    def latency_must_not_be_negative(cls, v):
        if v is not None and v < 0:
            raise ValueError('latency_ms must be >= 0')
        return v


class AccessEventResponse(BaseModel):
    recorded: bool
    name: str


class RecordListResponse(BaseModel):
    records: List[Dict[str, Any]]


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    environment: str
    active_deprecations: int
