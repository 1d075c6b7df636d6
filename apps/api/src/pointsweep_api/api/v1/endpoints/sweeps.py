"""Sweep execution endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from pointsweep_api.api.dependencies.security import require_admin_api_key
from pointsweep_api.api.dependencies.services import get_sweep_orchestrator
from pointsweep_api.schemas.sweep import SweepRequest, SweepRunView
from pointsweep_api.services.sweep.orchestrator import SweepOrchestrator


router = APIRouter(prefix="/sweeps", tags=["sweeps"], dependencies=[Depends(require_admin_api_key)])


@router.post("/run", summary="Promote and notify approved batches")
async def run_sweep(
    request: SweepRequest | None = None,
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> dict[str, Any]:
    scope = request or SweepRequest()
    result = await orchestrator.run(scope.merchant_id, triggered_by=scope.triggered_by)
    return {"success": True, **result.as_dict()}


@router.post("/preview", summary="Dry run of the next sweep")
async def preview_sweep(
    request: SweepRequest | None = None,
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> dict[str, Any]:
    preview = await orchestrator.preview((request or SweepRequest()).merchant_id)
    return {"success": True, **preview}


@router.post("/{batch_id}/retry", summary="Re-notify pending orders of an approved batch")
async def retry_sweep(
    batch_id: str,
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> dict[str, Any]:
    result = await orchestrator.retry_failed(batch_id)
    return {"success": True, **result.as_dict()}


@router.get("/runs", summary="Sweep run history")
async def list_runs(
    batch_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator),
) -> dict[str, Any]:
    runs = await orchestrator.runs(batch_id=batch_id, limit=limit)
    return {"success": True, "runs": [SweepRunView.model_validate(run) for run in runs]}
