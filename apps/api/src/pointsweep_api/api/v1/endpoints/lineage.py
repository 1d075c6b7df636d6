from typing import Any

from fastapi import APIRouter, Depends

from pointsweep_api.api.dependencies.security import require_admin_api_key
from pointsweep_api.api.dependencies.services import get_lineage_tracer
from pointsweep_api.schemas.lineage import LineageRequest
from pointsweep_api.services.lineage.tracer import LineageTracer


router = APIRouter(prefix="/lineage", tags=["lineage"], dependencies=[Depends(require_admin_api_key)])


@router.post("", summary="Trace an identifier through the pipeline")
async def trace_lineage(
    request: LineageRequest,
    tracer: LineageTracer = Depends(get_lineage_tracer),
) -> dict[str, Any]:
    lineage = await tracer.trace(request.id, request.type)
    return {"success": True, **lineage.as_dict()}
