"""Outbound webhook notification ledger."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Index, Integer, String, Text, func

from pointsweep_api.db.base import Base


class NotificationTargetTypeEnum(str, Enum):
    BROKER = "broker"
    MERCHANT = "merchant"


class NotificationStatusEnum(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Notification(Base):
    """One webhook delivery to a broker or merchant, kept for audit and retry."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_type = Column(
        SqlEnum(
            NotificationTargetTypeEnum,
            name="notification_target_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    target_id = Column(String(64), nullable=True)
    target_name = Column(String(128), nullable=True)
    event_type = Column(String(64), nullable=False)
    status = Column(
        SqlEnum(
            NotificationStatusEnum,
            name="notification_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=NotificationStatusEnum.PENDING.value,
        default=NotificationStatusEnum.PENDING,
    )
    payload = Column(Text, nullable=False)
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    member_id = Column(String(64), nullable=True)
    merchant_id = Column(String(64), nullable=True, index=True)
    basket_id = Column(String(128), nullable=True)
    correlation_id = Column(String(128), nullable=True, index=True)
    external_reference = Column(String(128), nullable=True, index=True)
    attempts = Column(Integer, nullable=False, server_default="0", default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (Index("ix_notifications_status_created", "status", "created_at"),)
