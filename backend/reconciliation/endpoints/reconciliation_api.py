"""
Reconciliation API Endpoints

Administrative surface for the reconciliation engine (internal API key):
- GET   /api/reconciliation/status                      - Module status
- GET   /api/reconciliation/suppliers                   - List supplier configs
- GET   /api/reconciliation/suppliers/{code}            - Get a supplier config
- PUT   /api/reconciliation/suppliers/{code}            - Create/update a supplier config
- POST  /api/reconciliation/suppliers/{code}/active     - Activate/deactivate a supplier
- POST  /api/reconciliation/runs                        - Upload a settlement file and reconcile it
- GET   /api/reconciliation/runs                        - List runs
- GET   /api/reconciliation/runs/{run_id}               - Get a run
- GET   /api/reconciliation/runs/{run_id}/matches       - Matches of a run
- GET   /api/reconciliation/runs/{run_id}/audit         - Audit events of a run
- GET   /api/reconciliation/runs/{run_id}/report        - JSON or XLSX run report
- GET   /api/reconciliation/matches/{match_id}          - Get a match
- PATCH /api/reconciliation/matches/{match_id}/resolve  - Apply a manual resolution
- POST  /api/reconciliation/matches/{match_id}/escalate - Escalate a match
- GET   /api/reconciliation/audit/verify                - Verify the audit hash chain
- GET   /api/reconciliation/analytics/summary           - Per-supplier statistics
"""

import logging
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_db
from middleware.internal_auth import InternalCaller, require_actor, require_internal_service
from reconciliation.exceptions import (
    ConfigurationMissing,
    InvalidTransition,
    ResolutionConflict,
)
from reconciliation.models import MatchStatus, ResolutionMethod, ResolutionStatus, RunStatus
from reconciliation.supplier_registry import supplier_registry
from reconciliation.adapters import ADAPTERS
from reconciliation.audit_trail import AuditTrailWriter, ReconciliationEventType
from reconciliation.services.reconciliation_store import ReconciliationStore
from reconciliation.services.resolution_service import ResolutionService
from reconciliation.services.run_orchestrator import RunOrchestrator, RunProcessingResult
from reconciliation.services.report_service import XLSX_MEDIA_TYPE, ReportService
from utils.validation_errors import (
    raise_invalid_parameter,
    validate_optional_choice,
    validate_required_uuid,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])

FAILURE_STATUS_CODES = {
    "SchemaMismatch": 422,
    "Timeout": 500,
    "MatchingError": 500,
}


# ==================== Request/Response Models ====================

class AlertRecipientModel(BaseModel):
    channel: str
    recipients: List[str]


class SupplierConfigUpdate(BaseModel):
    """Fields of a supplier config; omitted fields keep their current value."""
    supplier_name: Optional[str] = None
    ingestion_method: Optional[str] = Field(default=None, description="sftp, s3, api or email")
    file_format: Optional[str] = Field(default=None, description="csv, fixed_width, json or xml")
    file_name_pattern: Optional[str] = None
    delimiter: Optional[str] = None
    encoding: Optional[str] = None
    file_schema: Optional[Dict[str, Any]] = None
    adapter_class: Optional[str] = None
    timezone: Optional[str] = None
    matching_rules: Optional[Dict[str, Any]] = None
    timestamp_tolerance_seconds: Optional[int] = Field(default=None, ge=0)
    amount_tolerance_cents: Optional[int] = Field(default=None, ge=0)
    commission_calculation: Optional[Dict[str, Any]] = None
    resolution_rules: Optional[Dict[str, Any]] = None
    critical_variance_threshold_cents: Optional[int] = Field(default=None, ge=0)
    manual_review_alert_ratio: Optional[float] = Field(default=None, ge=0, le=1)
    sla_hours: Optional[int] = Field(default=None, ge=1)
    delivery_schedule: Optional[Dict[str, Any]] = None
    alert_recipients: Optional[List[AlertRecipientModel]] = None
    is_active: Optional[bool] = None


class SetActiveRequest(BaseModel):
    is_active: bool


class ResolveMatchRequest(BaseModel):
    """Manual resolution of a match under review."""
    resolution_method: ResolutionMethod = Field(..., description="manual_adjustment, supplier_correction, accepted_variance or write_off")
    notes: Optional[str] = Field(default=None, max_length=2000)


class EscalateMatchRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


# ==================== Helpers ====================

def _conflict_detail(e: ResolutionConflict) -> Dict[str, Any]:
    current = {
        k: (v.isoformat() if isinstance(v, datetime) else v)
        for k, v in e.current_state.items()
    }
    return {
        "message": str(e),
        "match_id": e.match_id,
        "expected_status": e.expected_status,
        "current_state": current,
    }


def _run_failure(result: RunProcessingResult):
    status_code = FAILURE_STATUS_CODES.get(result.failure_reason, 500)
    detail = {
        "message": result.error or "Reconciliation run failed",
        "run_id": result.run_id,
        "failure_reason": result.failure_reason,
    }
    if result.failure_reason == "SchemaMismatch":
        detail["parse_report"] = result.parse_report
    raise HTTPException(status_code=status_code, detail=detail)


def _parse_received_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise_invalid_parameter("received_at", "received_at must be an ISO-8601 timestamp", value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status(request: Request):
    """Reconciliation module status and configured suppliers."""
    pool = getattr(request.app.state, "worker_pool", None)
    return {
        "module": "reconciliation",
        "status": "operational" if supplier_registry.is_loaded else "starting",
        "adapters": sorted(ADAPTERS),
        "suppliers_active": [c.supplier_code for c in supplier_registry.get_active_configs()],
        "worker_pool": {
            "running": bool(pool and pool.is_running),
            "size": pool.size if pool else 0,
            "queued": pool.pending if pool else 0,
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# ---------- Suppliers ----------

@router.get("/suppliers", summary="List supplier configs")
async def list_suppliers(_caller: InternalCaller = Depends(require_internal_service)):
    configs = supplier_registry.get_all_configs()
    return {
        "suppliers": [cfg.to_dict() for cfg in configs],
        "active_count": len(supplier_registry.get_active_configs())
    }


@router.get("/suppliers/{supplier_code}", summary="Get supplier config")
async def get_supplier(supplier_code: str, _caller: InternalCaller = Depends(require_internal_service)):
    config = supplier_registry.find_config(supplier_code)
    if config is None:
        raise HTTPException(status_code=404, detail=f"Supplier {supplier_code} not found")
    return config.to_dict()


@router.put("/suppliers/{supplier_code}", summary="Create or update supplier config")
async def upsert_supplier(
    supplier_code: str,
    update: SupplierConfigUpdate,
    db: AsyncSession = Depends(get_db),
    caller: InternalCaller = Depends(require_internal_service)
):
    """
    Create or update a supplier config. Running reconciliations keep the
    config they started with.
    """
    values = update.model_dump(exclude_unset=True)
    if not values:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "adapter_class" in values and values["adapter_class"] not in ADAPTERS:
        raise_invalid_parameter(
            "adapter_class",
            f"Unknown adapter_class. Valid values: {sorted(ADAPTERS)}",
            values["adapter_class"]
        )

    try:
        config = await supplier_registry.upsert_config(db, supplier_code, values)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to save supplier config {supplier_code}: {e}")
        raise HTTPException(status_code=500, detail="Failed to save supplier config")

    await AuditTrailWriter(db).append(
        ReconciliationEventType.SUPPLIER_CONFIG_UPDATED,
        actor={"type": "user" if caller.actor_id else "system", "id": caller.audit_actor},
        entity={"type": "supplier_config", "id": config.id},
        payload={"supplier_code": config.supplier_code, "fields": sorted(values)},
    )
    return config.to_dict()


@router.post("/suppliers/{supplier_code}/active", summary="Activate or deactivate supplier")
async def set_supplier_active(
    supplier_code: str,
    body: SetActiveRequest,
    db: AsyncSession = Depends(get_db),
    caller: InternalCaller = Depends(require_internal_service)
):
    try:
        config = await supplier_registry.set_active(db, supplier_code, body.is_active)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    await AuditTrailWriter(db).append(
        ReconciliationEventType.SUPPLIER_CONFIG_UPDATED,
        actor={"type": "user" if caller.actor_id else "system", "id": caller.audit_actor},
        entity={"type": "supplier_config", "id": config.id},
        payload={"supplier_code": config.supplier_code, "fields": ["is_active"], "is_active": body.is_active},
    )
    return config.to_dict()


# ---------- Runs ----------

@router.post("/runs", summary="Upload and reconcile a settlement file")
async def create_run(
    request: Request,
    supplier_code: str = Form(..., description="Supplier code (e.g. MMART)"),
    received_at: Optional[str] = Form(default=None, description="ISO-8601 receipt time; defaults to now"),
    file: UploadFile = File(..., description="Supplier settlement file"),
    db: AsyncSession = Depends(get_db),
    caller: InternalCaller = Depends(require_internal_service)
):
    """
    Reconcile one supplier file.

    A byte-identical re-delivery returns the existing run with
    already_processed=true. Uses the worker pool when it is running.
    """
    raw_bytes = await file.read()
    if not raw_bytes:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    received = _parse_received_at(received_at)
    file_name = file.filename or "upload"

    try:
        pool = getattr(request.app.state, "worker_pool", None)
        if pool is not None and pool.is_running:
            result = await pool.submit(supplier_code, file_name, raw_bytes, received, caller.audit_actor)
        else:
            result = await RunOrchestrator(db).process_file(
                supplier_code, file_name, raw_bytes, received, caller.audit_actor
            )
    except ConfigurationMissing as e:
        raise HTTPException(status_code=404, detail=e.detail)
    except Exception as e:
        logger.error(f"Reconciliation upload failed for {supplier_code}: {e}")
        raise HTTPException(status_code=500, detail="Reconciliation run failed")

    if result.status == RunStatus.FAILED and not result.already_processed:
        _run_failure(result)
    return result.to_dict()


@router.get("/runs", summary="List runs")
async def list_runs(
    supplier_code: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None, description="pending, processing, completed or failed"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    _caller: InternalCaller = Depends(require_internal_service)
):
    run_status = validate_optional_choice(status, RunStatus, "status")
    runs = await ReconciliationStore(db).list_runs(
        supplier_code=supplier_code,
        status=run_status.value if run_status else None,
        limit=limit,
        offset=offset
    )
    return {"runs": runs, "count": len(runs), "limit": limit, "offset": offset}


@router.get("/runs/{run_id}", summary="Get run")
async def get_run(
    run_id: str,
    db: AsyncSession = Depends(get_db),
    _caller: InternalCaller = Depends(require_internal_service)
):
    validate_required_uuid(run_id, "run_id")
    run = await ReconciliationStore(db).get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run


@router.get("/runs/{run_id}/matches", summary="Matches of a run")
async def get_run_matches(
    run_id: str,
    match_status: Optional[str] = Query(default=None),
    has_discrepancy: Optional[bool] = Query(default=None),
    resolution_status: Optional[str] = Query(default=None),
    limit: int = Query(default=500, ge=1, le=5000),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    _caller: InternalCaller = Depends(require_internal_service)
):
    validate_required_uuid(run_id, "run_id")
    m_status = validate_optional_choice(match_status, MatchStatus, "match_status")
    r_status = validate_optional_choice(resolution_status, ResolutionStatus, "resolution_status")

    store = ReconciliationStore(db)
    if await store.get_run_status(run_id) is None:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")

    matches = await store.get_matches(
        run_id,
        match_status=m_status.value if m_status else None,
        has_discrepancy=has_discrepancy,
        resolution_status=r_status.value if r_status else None,
        limit=limit,
        offset=offset
    )
    return {"run_id": run_id, "matches": matches, "count": len(matches)}


@router.get("/runs/{run_id}/audit", summary="Audit events of a run")
async def get_run_audit(
    run_id: str,
    db: AsyncSession = Depends(get_db),
    _caller: InternalCaller = Depends(require_internal_service)
):
    validate_required_uuid(run_id, "run_id")
    events = await AuditTrailWriter(db).get_events(run_id)
    return {"run_id": run_id, "events": [e.to_dict() for e in events], "count": len(events)}


@router.get("/runs/{run_id}/report", summary="Run report")
async def get_run_report(
    run_id: str,
    format: str = Query(default="json", pattern="^(json|xlsx)$"),
    db: AsyncSession = Depends(get_db),
    _caller: InternalCaller = Depends(require_internal_service)
):
    validate_required_uuid(run_id, "run_id")
    service = ReportService(db)
    try:
        if format == "xlsx":
            content = await service.xlsx_report(run_id)
            return Response(
                content=content,
                media_type=XLSX_MEDIA_TYPE,
                headers={"Content-Disposition": f'attachment; filename="reconciliation_{run_id}.xlsx"'}
            )
        return await service.json_report(run_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ---------- Matches ----------

@router.get("/matches/{match_id}", summary="Get match")
async def get_match(
    match_id: str,
    db: AsyncSession = Depends(get_db),
    _caller: InternalCaller = Depends(require_internal_service)
):
    validate_required_uuid(match_id, "match_id")
    match = await ReconciliationStore(db).get_match(match_id)
    if match is None:
        raise HTTPException(status_code=404, detail=f"Match {match_id} not found")
    return match


@router.patch("/matches/{match_id}/resolve", summary="Resolve match")
async def resolve_match(
    match_id: str,
    body: ResolveMatchRequest,
    db: AsyncSession = Depends(get_db),
    caller: InternalCaller = Depends(require_actor)
):
    """
    Apply a manual resolution to a match in manual_review (or escalated).

    409 when another resolution got there first; the body carries the
    match's current state.
    """
    validate_required_uuid(match_id, "match_id")
    try:
        return await ResolutionService(db).apply_resolution(
            match_id, body.resolution_method, body.notes, caller.actor_id
        )
    except ResolutionConflict as e:
        raise HTTPException(status_code=409, detail=_conflict_detail(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        status_code = 404 if "not found" in str(e) else 400
        raise HTTPException(status_code=status_code, detail=str(e))


@router.post("/matches/{match_id}/escalate", summary="Escalate match")
async def escalate_match(
    match_id: str,
    body: EscalateMatchRequest,
    db: AsyncSession = Depends(get_db),
    caller: InternalCaller = Depends(require_actor)
):
    validate_required_uuid(match_id, "match_id")
    try:
        return await ResolutionService(db).escalate(match_id, body.reason, caller.actor_id)
    except ResolutionConflict as e:
        raise HTTPException(status_code=409, detail=_conflict_detail(e))
    except InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        status_code = 404 if "not found" in str(e) else 400
        raise HTTPException(status_code=status_code, detail=str(e))


# ---------- Audit / analytics ----------

@router.get("/audit/verify", summary="Verify audit chain")
async def verify_audit_chain(
    db: AsyncSession = Depends(get_db),
    _caller: InternalCaller = Depends(require_internal_service)
):
    return await AuditTrailWriter(db).verify()


@router.get("/analytics/summary", summary="Reconciliation analytics")
async def analytics_summary(
    days: int = Query(default=30, ge=1, le=366),
    db: AsyncSession = Depends(get_db),
    _caller: InternalCaller = Depends(require_internal_service)
):
    return await ReconciliationStore(db).analytics_summary(days)
