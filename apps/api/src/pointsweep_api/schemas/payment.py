from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from pointsweep_api.models.bank_transfer import BankTransferStatusEnum


class MarkPaidRequest(BaseModel):
    merchant_id: str = Field(..., max_length=64)
    paid_batch_id: str | None = Field(default=None, max_length=128, description="Defaults to ACH_<merchant>_<timestamp>")


class TransferStatusRequest(BaseModel):
    status: str = Field(..., description="pending, posted, settled, failed or returned")
    external_id: str | None = Field(default=None, max_length=128)
    failure_reason: str | None = None


class BankTransferView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    idempotency_key: str
    merchant_id: str
    amount: float
    order_count: int
    status: BankTransferStatusEnum
    external_id: str | None = None
    failure_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
