"""Local mirror of outbound merchant bank transfers."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Integer, Numeric, String, Text, func

from pointsweep_api.db.base import Base


class BankTransferStatusEnum(str, Enum):
    PENDING = "pending"
    POSTED = "posted"
    SETTLED = "settled"
    FAILED = "failed"
    RETURNED = "returned"


class BankTransfer(Base):
    """Transfer keyed by the paid batch id it settles."""

    __tablename__ = "bank_transfers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(128), nullable=False, unique=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    order_count = Column(Integer, nullable=False, server_default="0", default=0)
    status = Column(
        SqlEnum(
            BankTransferStatusEnum,
            name="bank_transfer_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=BankTransferStatusEnum.PENDING.value,
        default=BankTransferStatusEnum.PENDING,
    )
    external_id = Column(String(128), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
