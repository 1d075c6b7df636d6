from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from pointsweep_api.models.notification import NotificationStatusEnum, NotificationTargetTypeEnum


class NotificationView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    target_type: NotificationTargetTypeEnum
    target_id: str | None = None
    target_name: str | None = None
    event_type: str
    status: NotificationStatusEnum
    response_code: int | None = None
    error_message: str | None = None
    member_id: str | None = None
    merchant_id: str | None = None
    basket_id: str | None = None
    correlation_id: str | None = None
    external_reference: str | None = None
    attempts: int = 0
    created_at: datetime | None = None
    sent_at: datetime | None = None
