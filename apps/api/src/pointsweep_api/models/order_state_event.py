"""Order status history."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, JSON, String, Text, func
from sqlalchemy.orm import relationship

from pointsweep_api.db.base import Base


class OrderStateActorTypeEnum(str, Enum):
    """Identity of the actor causing the transition."""

    SYSTEM = "system"
    ADMIN = "admin"
    MEMBER = "member"
    BROKER = "broker"
    SWEEP = "sweep"
    SETTLEMENT = "settlement"


class OrderStateEvent(Base):
    """Audit log entry for every order status transition."""

    __tablename__ = "order_state_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=False)
    actor_type = Column(
        SqlEnum(
            OrderStateActorTypeEnum,
            name="order_state_actor_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=OrderStateActorTypeEnum.SYSTEM.value,
        default=OrderStateActorTypeEnum.SYSTEM,
    )
    actor_label = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="state_events")
