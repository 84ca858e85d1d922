"""
HTTP API for the deprecation engine.

Every lifecycle operation of the CLI is available under /deprecations. Failed
operations map to an HTTP status with the structured error payload in `detail`.
"""

import threading
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware

from .schemas import (
    AccessEventRequest,
    AccessEventResponse,
    ApproveRequest,
    BackupRequest,
    HealthResponse,
    Phase1Request,
    Phase2Request,
    PlanRequest,
    QueryAccessRequest,
    PlanResponse,
    RecordListResponse,
    RollbackRequest,
)
from ..core.config import DEBUG, DEPRECATION_ENVIRONMENT, VERSION
from ..core.db import health_check
from ..core.errors import (
    BackupUnavailableError,
    CatalogUnavailableError,
    ConfirmationRequiredError,
    DeprecationError,
    DestructiveOperationError,
    ElementNotFoundError,
    RecordNotFoundError,
    RollbackFailedError,
    TransitionInProgressError,
)
from ..core.orchestrator import DeprecationOrchestrator, TransitionResult
from ..core.service import build_orchestrator

from util.logging import logger

app = FastAPI(
    title="Schema Sunset API",
    version=VERSION,
    description="Two-phase deprecation and safe removal of database schema elements",
    docs_url="/docs" if DEBUG else None,
    redoc_url="/redoc" if DEBUG else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_orchestrator = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> DeprecationOrchestrator:
    """Build the process-wide orchestrator on first use and start its access monitor."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = build_orchestrator()
            _orchestrator.resume_monitoring()
            _orchestrator.monitor.start()
            logger.info("Deprecation orchestrator initialised for HTTP API")
        return _orchestrator


def status_code_for(error: DeprecationError) -> int:
    if isinstance(error, (RecordNotFoundError, ElementNotFoundError)):
        return 404
    if isinstance(error, ConfirmationRequiredError):
        return 400
    if isinstance(error, (CatalogUnavailableError, BackupUnavailableError, TransitionInProgressError)):
        return 503
    if isinstance(error, (RollbackFailedError, DestructiveOperationError)):
        return 500
    return 409


def _transition_response(result: TransitionResult) -> Dict[str, Any]:
    payload = result.to_dict()
    if not result.success:
        raise HTTPException(status_code=status_code_for(result.error), detail=payload)
    return payload


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    """Check system health."""
    db_health = health_check(orchestrator.store.db_path)
    active = len(orchestrator.list_records(active_only=True)) if db_health else 0

    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        environment=orchestrator.default_environment or DEPRECATION_ENVIRONMENT,
        active_deprecations=active
    )


@app.post("/deprecations", response_model=PlanResponse)
def plan_endpoint(request: PlanRequest, orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    try:
        results = orchestrator.plan(request.elements, request.reason, environment=request.environment,
                                    created_by=request.created_by)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    payload = {"results": [r.to_dict() for r in results]}
    failures = [r for r in results if not r.success]
    if failures and len(failures) == len(results):
        raise HTTPException(status_code=status_code_for(failures[0].error), detail=payload)
    return payload


@app.get("/deprecations", response_model=RecordListResponse)
def list_endpoint(all: bool = False, orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    records = orchestrator.list_records(active_only=not all)
    return {"records": [r.to_dict() for r in records]}


@app.get("/deprecations/{identifier}")
def status_endpoint(identifier: str, orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.status(identifier).to_dict()
    except DeprecationError as e:
        raise HTTPException(status_code=status_code_for(e), detail=e.to_dict())


@app.post("/deprecations/{deprecation_id}/phase1")
def phase1_endpoint(deprecation_id: str, request: Optional[Phase1Request] = None,
                    orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    executed_by = request.executed_by if request else None
    return _transition_response(orchestrator.execute_phase1(deprecation_id, executed_by=executed_by))


@app.post("/deprecations/{deprecation_id}/approvals")
def approve_endpoint(deprecation_id: str, request: ApproveRequest,
                     orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    return _transition_response(orchestrator.approve(
        deprecation_id, request.role, request.approver, request.decision, request.justification
    ))


@app.post("/deprecations/{deprecation_id}/backup")
def backup_endpoint(deprecation_id: str, request: Optional[BackupRequest] = None,
                    orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    verify = request.verify if request else True
    return _transition_response(orchestrator.prepare_backup(deprecation_id, verify=verify))


@app.post("/deprecations/{deprecation_id}/phase2")
def phase2_endpoint(deprecation_id: str, request: Phase2Request,
                    orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    return _transition_response(orchestrator.execute_phase2(
        deprecation_id, confirm=request.confirm, executed_by=request.executed_by
    ))


@app.post("/deprecations/{deprecation_id}/rollback")
def rollback_endpoint(deprecation_id: str, request: RollbackRequest,
                      orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    return _transition_response(orchestrator.rollback(
        deprecation_id, request.reason, requested_by=request.requested_by
    ))


@app.post("/backups/{backup_id}/verify")
def verify_backup_endpoint(backup_id: str, orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    try:
        backup = orchestrator.verify_backup(backup_id)
    except DeprecationError as e:
        raise HTTPException(status_code=status_code_for(e), detail=e.to_dict())
    return {"backup": backup.to_dict()}


@app.post("/access", response_model=AccessEventResponse)
def access_endpoint(request: AccessEventRequest, orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    """Report an observed access; only names of watched elements are recorded."""
    recorded = orchestrator.monitor.record_name_access(
        request.name, request.operation, request.source,
        latency_ms=request.latency_ms, source_identifier=request.source_identifier, owner=request.owner,
    )
    return AccessEventResponse(recorded=recorded, name=request.name)


@app.post("/access/query")
def query_access_endpoint(request: QueryAccessRequest,
                          orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    """Report a SQL statement; every watched element it names is recorded."""
    elements = orchestrator.monitor.intercept_query(
        request.sql, request.source, latency_ms=request.latency_ms, source_identifier=request.source_identifier,
    )
    return {"elements": elements, "warnings": [f"Query accesses deprecated element {key}" for key in elements]}


@app.get("/access/candidates")
def removal_candidates_endpoint(days: int = 30, orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    if days < 1:
        raise HTTPException(status_code=422, detail="days must be >= 1")
    candidates = orchestrator.monitor.removal_candidates(days)
    return {"days": days, "candidates": [element.key for element in candidates]}


@app.get("/names")
def names_endpoint(orchestrator: DeprecationOrchestrator = Depends(get_orchestrator)):
    summary = orchestrator.naming_summary()
    if "error" in summary:
        raise HTTPException(status_code=503, detail=summary["error"])
    return summary
