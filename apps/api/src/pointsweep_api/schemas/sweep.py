from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pointsweep_api.models.sweep_run import SweepRunStatusEnum


class SweepRequest(BaseModel):
    merchant_id: str | None = Field(default=None, max_length=64, description="Restrict the sweep to one merchant")
    triggered_by: str = Field(default="admin", max_length=64)


class SweepRunView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    batch_id: str | None = None
    merchant_filter: str | None = None
    triggered_by: str
    status: SweepRunStatusEnum
    started_at: datetime | None = None
    completed_at: datetime | None = None
    merchants_processed: int
    orders_processed: int
    orders_confirmed: int
    orders_failed: int
    brokers_notified: list[Any] = Field(default_factory=list)
    errors: list[Any] = Field(default_factory=list)
