"""Order inspection and operator actions."""

from typing import Any

from fastapi import APIRouter, Depends

from pointsweep_api.api.dependencies.security import require_admin_api_key
from pointsweep_api.api.dependencies.services import get_order_service
from pointsweep_api.schemas.order import OrderCancelRequest, OrderEventView, OrderSellRequest, OrderView
from pointsweep_api.services.orders.service import OrderService


router = APIRouter(prefix="/orders", tags=["orders"], dependencies=[Depends(require_admin_api_key)])


@router.post("/sell", summary="Flag settled orders for sale, or revert the flag")
async def sell_orders(request: OrderSellRequest, service: OrderService = Depends(get_order_service)) -> dict[str, Any]:
    if request.revert:
        result = await service.revert_sale(request.order_ids)
    else:
        result = await service.mark_for_sale(request.order_ids)
    return {"success": True, "updated": result.updated, "skipped": result.skipped}


@router.get("/{order_id}", summary="Order with its state history")
async def get_order(order_id: int, service: OrderService = Depends(get_order_service)) -> dict[str, Any]:
    detail = await service.get(order_id)
    return {
        "success": True,
        "order": OrderView.model_validate(detail.order),
        "history": [OrderEventView.model_validate(event) for event in detail.history],
    }


@router.post("/{order_id}/cancel", summary="Cancel a pending or placed order and refund the wallet")
async def cancel_order(
    order_id: int,
    request: OrderCancelRequest | None = None,
    service: OrderService = Depends(get_order_service),
) -> dict[str, Any]:
    order = await service.cancel(order_id, actor_label=(request or OrderCancelRequest()).actor)
    return {"success": True, "order": OrderView.model_validate(order)}
