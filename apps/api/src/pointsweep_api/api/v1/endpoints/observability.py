"""Pipeline observability snapshot."""

from fastapi import APIRouter, Depends

from pointsweep_api.api.dependencies.security import require_admin_api_key
from pointsweep_api.observability.pipeline import get_pipeline_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/pipeline",
    dependencies=[Depends(require_admin_api_key)],
    summary="Sweep, delivery and callback counters",
)
async def get_pipeline_snapshot() -> dict[str, object]:
    """Retrieve aggregated pipeline metrics (requires admin API key)."""
    return {"success": True, **get_pipeline_store().snapshot().as_dict()}
