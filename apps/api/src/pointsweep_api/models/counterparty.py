"""Merchants and brokers that receive webhook notifications."""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, func

from pointsweep_api.db.base import Base


class Merchant(Base):
    __tablename__ = "merchants"

    merchant_id = Column(String(64), primary_key=True)
    merchant_name = Column(String(255), nullable=True)
    sweep_day = Column(Integer, nullable=True)
    conversion_rate = Column(Numeric(12, 6), nullable=True)
    webhook_url = Column(String(512), nullable=True)
    webhook_secret = Column(String(255), nullable=True)
    api_key = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Broker(Base):
    __tablename__ = "brokers"

    broker_id = Column(String(64), primary_key=True)
    broker_name = Column(String(128), nullable=False, unique=True)
    webhook_url = Column(String(512), nullable=True)
    webhook_secret = Column(String(255), nullable=True)
    api_key = Column(String(255), nullable=True, unique=True)
    is_active = Column(Boolean, nullable=False, server_default="1", default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
