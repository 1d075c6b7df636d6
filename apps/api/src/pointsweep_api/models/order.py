from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from pointsweep_api.db.base import Base


class OrderStatusEnum(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PLACED = "placed"
    CONFIRMED = "confirmed"
    EXECUTED = "executed"
    SETTLED = "settled"
    SELL = "sell"
    SOLD = "sold"
    CANCELLED = "cancelled"
    FAILED = "failed"


class OrderTypeEnum(str, Enum):
    SWEEP = "sweep"
    MARKET = "market"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String(64), nullable=False, index=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    batch_id = Column(String(64), ForeignKey("prepare_batches.id", ondelete="SET NULL"), nullable=True, index=True)
    prepared_order_id = Column(
        Integer,
        ForeignKey("prepared_orders.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    basket_id = Column(String(128), nullable=False, index=True)
    symbol = Column(String(16), nullable=False)
    shares = Column(Numeric(18, 6), nullable=False, server_default="0")
    amount = Column(Numeric(14, 2), nullable=False)
    points_used = Column(Integer, nullable=False, server_default="0", default=0)
    status = Column(
        SqlEnum(
            OrderStatusEnum,
            name="order_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=OrderStatusEnum.PENDING.value,
        default=OrderStatusEnum.PENDING,
    )
    order_type = Column(
        SqlEnum(
            OrderTypeEnum,
            name="order_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=OrderTypeEnum.SWEEP.value,
        default=OrderTypeEnum.SWEEP,
    )
    broker = Column(String(128), nullable=True, index=True)
    broker_reference = Column(String(128), nullable=True, index=True)
    sweep_run_id = Column(String(64), ForeignKey("sweep_runs.id", ondelete="SET NULL"), nullable=True)

    executed_price = Column(Numeric(18, 6), nullable=True)
    executed_shares = Column(Numeric(18, 6), nullable=True)
    executed_amount = Column(Numeric(14, 2), nullable=True)
    confirmation_attempts = Column(Integer, nullable=False, server_default="0", default=0)
    failure_reason = Column(Text, nullable=True)

    paid_flag = Column(Boolean, nullable=False, server_default="0", default=False)
    paid_batch_id = Column(String(128), nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    queued_at = Column(DateTime(timezone=True), nullable=True)
    placed_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    sold_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    state_events = relationship(
        "OrderStateEvent",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStateEvent.id",
    )

    __table_args__ = (
        Index("ix_orders_merchant_status_paid", "merchant_id", "status", "paid_flag"),
        Index("ix_orders_member_status", "member_id", "status"),
    )
