"""Staged redemption batches awaiting approval."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from pointsweep_api.db.base import Base


class PrepareBatchStatusEnum(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    DISCARDED = "discarded"
    SUBMITTED = "submitted"


class PrepareBatch(Base):
    """A proposed grouping of redemptions; nothing is live until it is approved and swept."""

    __tablename__ = "prepare_batches"

    id = Column(String(64), primary_key=True)
    status = Column(
        SqlEnum(
            PrepareBatchStatusEnum,
            name="prepare_batch_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=PrepareBatchStatusEnum.DRAFT.value,
        default=PrepareBatchStatusEnum.DRAFT,
    )
    filter_merchant = Column(String(64), nullable=True)
    filter_member = Column(String(64), nullable=True)
    total_members = Column(Integer, nullable=False, server_default="0", default=0)
    total_orders = Column(Integer, nullable=False, server_default="0", default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, server_default="0")
    total_points = Column(Integer, nullable=False, server_default="0", default=0)
    members_skipped = Column(Integer, nullable=False, server_default="0", default=0)
    notes = Column(Text, nullable=True)
    sweep_claim = Column(String(64), nullable=True)
    sweep_claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    discarded_at = Column(DateTime(timezone=True), nullable=True)

    prepared_orders = relationship(
        "PreparedOrder",
        back_populates="batch",
        cascade="all, delete-orphan",
        order_by="PreparedOrder.id",
    )


class PreparedOrder(Base):
    """A staged order line. Rows are written once by the preparer and only ever copied afterwards."""

    __tablename__ = "prepared_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String(64), ForeignKey("prepare_batches.id", ondelete="CASCADE"), nullable=False, index=True)
    basket_id = Column(String(128), nullable=False, index=True)
    member_id = Column(String(64), nullable=False, index=True)
    merchant_id = Column(String(64), nullable=False)
    symbol = Column(String(16), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    price = Column(Numeric(18, 6), nullable=True)
    shares = Column(Numeric(18, 6), nullable=False, server_default="0")
    points_used = Column(Integer, nullable=False, server_default="0", default=0)
    broker = Column(String(128), nullable=True)
    member_tier = Column(String(64), nullable=True)
    conversion_rate = Column(Numeric(12, 6), nullable=False)
    sweep_percentage = Column(Integer, nullable=False)
    allocation_pct = Column(Numeric(7, 4), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    batch = relationship("PrepareBatch", back_populates="prepared_orders")
