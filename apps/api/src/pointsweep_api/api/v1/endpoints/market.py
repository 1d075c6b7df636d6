from typing import Any

from fastapi import APIRouter, Depends

from pointsweep_api.api.dependencies.services import get_market_calendar
from pointsweep_api.services.market_calendar import MarketCalendar


router = APIRouter(prefix="/market", tags=["market"])


@router.get("/status", summary="Current market session state")
async def market_status(calendar: MarketCalendar = Depends(get_market_calendar)) -> dict[str, Any]:
    return {"success": True, **calendar.status().as_dict()}
