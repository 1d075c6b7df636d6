from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pointsweep_api.models.order import OrderStatusEnum, OrderTypeEnum
from pointsweep_api.models.order_state_event import OrderStateActorTypeEnum


class OrderView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    member_id: str
    merchant_id: str
    batch_id: str | None = None
    basket_id: str
    symbol: str
    shares: float
    amount: float
    points_used: int
    status: OrderStatusEnum
    order_type: OrderTypeEnum
    broker: str | None = None
    broker_reference: str | None = None
    sweep_run_id: str | None = None
    executed_price: float | None = None
    executed_shares: float | None = None
    executed_amount: float | None = None
    confirmation_attempts: int = 0
    failure_reason: str | None = None
    paid_flag: bool = False
    paid_batch_id: str | None = None
    paid_at: datetime | None = None
    created_at: datetime | None = None
    placed_at: datetime | None = None
    confirmed_at: datetime | None = None
    executed_at: datetime | None = None
    settled_at: datetime | None = None
    cancelled_at: datetime | None = None
    failed_at: datetime | None = None


class OrderEventView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    from_status: str | None = None
    to_status: str
    actor_type: OrderStateActorTypeEnum
    actor_label: str | None = None
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_json")
    created_at: datetime | None = None


class OrderCancelRequest(BaseModel):
    actor: str | None = Field(default=None, max_length=255, description="Operator requesting the cancel")


class OrderSellRequest(BaseModel):
    order_ids: list[int] = Field(..., min_length=1, description="Settled orders to flag for sale")
    revert: bool = Field(default=False, description="Move flagged orders back to settled instead")
