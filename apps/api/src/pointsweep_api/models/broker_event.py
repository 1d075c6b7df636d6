"""Inbound broker callback receipts."""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint, func

from pointsweep_api.db.base import Base


class BrokerEventReceipt(Base):
    """Durable record that a broker event was applied to an order."""

    __tablename__ = "broker_event_receipts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    broker = Column(String(128), nullable=True)
    request_id = Column(String(128), nullable=True)
    broker_reference = Column(String(128), nullable=True, index=True)
    exec_reference = Column(String(128), nullable=True, index=True)
    outcome = Column(String(32), nullable=False)
    payload_excerpt = Column(JSON, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "event_type", name="uq_broker_event_receipt_order_event"),
    )
