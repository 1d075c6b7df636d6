from __future__ import annotations

from pydantic import BaseModel, Field


class LineageRequest(BaseModel):
    id: str = Field(..., description="Identifier to trace from")
    type: str = Field(..., description="basket, order, prepare-batch, sweep-batch, broker-reference, exec-reference or ach-batch")
