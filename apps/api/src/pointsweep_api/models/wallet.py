"""Member wallet balances and stock picks."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)

from pointsweep_api.db.base import Base


class WalletStatusEnum(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class Wallet(Base):
    __tablename__ = "wallets"

    member_id = Column(String(64), primary_key=True)
    merchant_id = Column(String(64), nullable=False, index=True)
    points = Column(Integer, nullable=False, server_default="0", default=0)
    cash_balance = Column(Numeric(14, 2), nullable=False, server_default="0", default=0)
    sweep_enrolled = Column(Boolean, nullable=False, server_default="0", default=False)
    sweep_percentage = Column(Integer, nullable=False, server_default="0", default=0)
    conversion_rate = Column(Numeric(12, 6), nullable=True)
    member_tier = Column(String(64), nullable=True)
    broker = Column(String(128), nullable=True)
    status = Column(
        SqlEnum(
            WalletStatusEnum,
            name="wallet_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        server_default=WalletStatusEnum.ACTIVE.value,
        default=WalletStatusEnum.ACTIVE,
    )
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class MemberStockPick(Base):
    __tablename__ = "member_stock_picks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String(64), nullable=False, index=True)
    symbol = Column(String(16), nullable=False)
    allocation_pct = Column(Numeric(7, 4), nullable=True)
    is_active = Column(Boolean, nullable=False, server_default="1", default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (UniqueConstraint("member_id", "symbol", name="uq_member_stock_pick_symbol"),)
