from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from pointsweep_api.models.prepare_batch import PrepareBatchStatusEnum


class BatchFilter(BaseModel):
    """Scope for preview and preparation; both empty means every enrolled member."""

    merchant_id: str | None = Field(default=None, max_length=64)
    member_id: str | None = Field(default=None, max_length=64)


class BatchSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: PrepareBatchStatusEnum
    filter_merchant: str | None = None
    filter_member: str | None = None
    total_members: int
    total_orders: int
    total_amount: float
    total_points: int
    members_skipped: int
    notes: str | None = None
    created_at: datetime | None = None
    approved_at: datetime | None = None
    submitted_at: datetime | None = None
    discarded_at: datetime | None = None
