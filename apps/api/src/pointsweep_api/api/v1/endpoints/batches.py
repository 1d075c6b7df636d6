"""Prepare-batch staging, review and approval endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from pointsweep_api.api.dependencies.security import require_admin_api_key
from pointsweep_api.api.dependencies.services import get_batch_preparer
from pointsweep_api.core.settings import settings
from pointsweep_api.schemas.batch import BatchFilter, BatchSummary
from pointsweep_api.services.batches.preparer import BatchPreparer


router = APIRouter(prefix="/batches", tags=["batches"], dependencies=[Depends(require_admin_api_key)])


@router.post("/preview", summary="Project eligible members and totals without writing")
async def preview_batch(
    request: BatchFilter | None = None,
    preparer: BatchPreparer = Depends(get_batch_preparer),
) -> dict[str, Any]:
    counts = await preparer.preview_counts((request or BatchFilter()).merchant_id)
    return {"success": True, **counts}


@router.post("", summary="Stage a draft prepare batch")
async def prepare_batch(
    request: BatchFilter | None = None,
    preparer: BatchPreparer = Depends(get_batch_preparer),
) -> dict[str, Any]:
    scope = request or BatchFilter()
    result = await preparer.prepare(member_id=scope.member_id, merchant_id=scope.merchant_id)
    return {
        "success": True,
        "batch_id": result.batch.id,
        "batch": BatchSummary.model_validate(result.batch),
        "skipped": [{"member_id": member, "reason": reason} for member, reason in sorted(result.skipped.items())],
    }


@router.get("", summary="Recent prepare batches")
async def list_batches(
    limit: int = Query(default=settings.batch_list_limit, ge=1, le=500),
    preparer: BatchPreparer = Depends(get_batch_preparer),
) -> dict[str, Any]:
    batches = await preparer.batches(limit)
    return {"success": True, "batches": [BatchSummary.model_validate(batch) for batch in batches]}


@router.get("/{batch_id}/stats", summary="Batch rollups by merchant, broker, tier and symbol")
async def batch_stats(batch_id: str, preparer: BatchPreparer = Depends(get_batch_preparer)) -> dict[str, Any]:
    stats = await preparer.stats(batch_id)
    stats["batch"] = BatchSummary.model_validate(stats["batch"])
    return {"success": True, **stats}


@router.get("/{batch_id}/members", summary="Paginated per-member drilldown")
async def batch_members(
    batch_id: str,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=settings.drilldown_page_size, ge=1, le=500),
    merchant_id: str | None = Query(default=None),
    broker: str | None = Query(default=None),
    preparer: BatchPreparer = Depends(get_batch_preparer),
) -> dict[str, Any]:
    drilldown = await preparer.drilldown(
        batch_id,
        page=page,
        per_page=per_page,
        merchant_id=merchant_id,
        broker=broker,
    )
    return {"success": True, "batch_id": batch_id, **drilldown}


@router.post("/{batch_id}/approve", summary="Approve a draft batch for sweeping")
async def approve_batch(batch_id: str, preparer: BatchPreparer = Depends(get_batch_preparer)) -> dict[str, Any]:
    batch = await preparer.approve(batch_id)
    return {"success": True, "batch": BatchSummary.model_validate(batch)}


@router.post("/{batch_id}/discard", summary="Discard a draft batch")
async def discard_batch(batch_id: str, preparer: BatchPreparer = Depends(get_batch_preparer)) -> dict[str, Any]:
    batch = await preparer.discard(batch_id)
    return {"success": True, "batch": BatchSummary.model_validate(batch)}
