from typing import Any

from fastapi import APIRouter, Depends, Query

from pointsweep_api.api.dependencies.security import require_admin_api_key
from pointsweep_api.api.dependencies.services import get_notification_delivery
from pointsweep_api.models.notification import NotificationStatusEnum, NotificationTargetTypeEnum
from pointsweep_api.schemas.notification import NotificationView
from pointsweep_api.services.notifications.delivery import NotificationDelivery


router = APIRouter(prefix="/notifications", tags=["notifications"], dependencies=[Depends(require_admin_api_key)])


@router.get("", summary="Notification ledger")
async def list_notifications(
    status: NotificationStatusEnum | None = Query(default=None),
    target_type: NotificationTargetTypeEnum | None = Query(default=None),
    event_type: str | None = Query(default=None),
    correlation_id: str | None = Query(default=None),
    merchant_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    delivery: NotificationDelivery = Depends(get_notification_delivery),
) -> dict[str, Any]:
    rows = await delivery.list(
        status=status,
        target_type=target_type,
        event_type=event_type,
        correlation_id=correlation_id,
        merchant_id=merchant_id,
        limit=limit,
    )
    return {"success": True, "notifications": [NotificationView.model_validate(row) for row in rows]}


@router.post("/{notification_id}/retry", summary="Re-deliver a failed or pending notification")
async def retry_notification(
    notification_id: int,
    delivery: NotificationDelivery = Depends(get_notification_delivery),
) -> dict[str, Any]:
    result = await delivery.retry(notification_id)
    return {"success": result.success, **result.as_dict()}
