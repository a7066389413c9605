"""
Reconciliation endpoints.

- POST /api/v1/cron/reconciliation   - cron trigger (CRON_SECRET bearer)
- POST /api/v1/admin/reconciliation  - manual trigger (admin key)
- GET  /api/v1/admin/reconciliation/history
- GET  /api/v1/admin/reconciliation/metrics
- GET  /api/v1/admin/reconciliation/checks
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fieldsync.api.deps import (
    get_reconciliation_engine,
    require_admin_key,
    require_cron_secret,
)
from fieldsync.integrations.errors import ServiceM8Error
from fieldsync.models.reconciliation_log import ReconciliationStatus, ReconciliationType
from fieldsync.schemas.api_responses import ReconciliationRequest, ReconciliationResponse

logger = logging.getLogger(__name__)
router = APIRouter(tags=["reconciliation"])


def _run_type(body: Optional[ReconciliationRequest], default: str) -> str:
    run_type = (body.type if body and body.type else default)
    if run_type not in ReconciliationType.ALL:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid reconciliation type: {run_type}. Use one of {', '.join(ReconciliationType.ALL)}",
        )
    return run_type


@router.post(
    "/api/v1/cron/reconciliation",
    response_model=ReconciliationResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def cron_reconciliation(
    body: Optional[ReconciliationRequest] = None,
    engine=Depends(get_reconciliation_engine),
):
    run_type = _run_type(body, ReconciliationType.INCREMENTAL)
    log = await engine.run(run_type, actor="cron")
    return ReconciliationResponse(success=log.status == ReconciliationStatus.COMPLETED, result=log.to_dict())


@router.post(
    "/api/v1/admin/reconciliation",
    response_model=ReconciliationResponse,
    dependencies=[Depends(require_admin_key)],
)
async def admin_reconciliation(
    body: Optional[ReconciliationRequest] = None,
    engine=Depends(get_reconciliation_engine),
):
    run_type = _run_type(body, ReconciliationType.EMERGENCY)
    logger.info("Manual %s reconciliation requested", run_type)
    log = await engine.run(run_type, actor="admin")
    return ReconciliationResponse(success=log.status == ReconciliationStatus.COMPLETED, result=log.to_dict())


@router.get(
    "/api/v1/admin/reconciliation/history",
    dependencies=[Depends(require_admin_key)],
)
async def reconciliation_history(
    limit: int = Query(50, ge=1, le=500),
    type: Optional[str] = Query(None),
    engine=Depends(get_reconciliation_engine),
):
    if type and type not in ReconciliationType.ALL:
        raise HTTPException(status_code=400, detail=f"Invalid reconciliation type: {type}")
    return {
        "success": True,
        "data": {
            "history": await engine.history(limit=limit, run_type=type),
            "statistics": await engine.statistics(),
        },
    }


@router.get(
    "/api/v1/admin/reconciliation/metrics",
    dependencies=[Depends(require_admin_key)],
)
async def reconciliation_metrics(engine=Depends(get_reconciliation_engine)):
    return {"success": True, "data": await engine.metrics()}


@router.get(
    "/api/v1/admin/reconciliation/checks",
    dependencies=[Depends(require_admin_key)],
)
async def consistency_checks(engine=Depends(get_reconciliation_engine)):
    """Report drift without repairing it."""
    try:
        report = await engine.perform_consistency_checks()
    except ServiceM8Error as e:
        raise HTTPException(status_code=502, detail=f"ServiceM8 request failed: {e.message}")
    return {"success": True, "data": report.model_dump(mode="json")}
