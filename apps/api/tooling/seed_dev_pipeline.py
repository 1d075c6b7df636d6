"""Seed a development merchant, broker and enrolled wallets into the API database."""

from __future__ import annotations

import asyncio
from decimal import Decimal
import os
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pointsweep_api.core.settings import settings
from pointsweep_api.models import Broker, MemberStockPick, Merchant, Wallet, WalletStatusEnum


class SeedWallet(TypedDict):
    member_id: str
    points: int
    cash_balance: str
    sweep_percentage: int
    picks: list[str]


DEV_MERCHANT_ID = os.getenv("DEV_MERCHANT_ID", "M1")
DEV_BROKER_NAME = os.getenv("DEV_BROKER_NAME", "Alpaca")

DEV_WALLETS: list[SeedWallet] = [
    {"member_id": "dev-member-1", "points": 5000, "cash_balance": "50.00", "sweep_percentage": 100, "picks": ["AAPL", "MSFT"]},
    {"member_id": "dev-member-2", "points": 2500, "cash_balance": "25.00", "sweep_percentage": 50, "picks": ["VTI"]},
    {"member_id": "dev-member-3", "points": 1000, "cash_balance": "10.00", "sweep_percentage": 0, "picks": ["NVDA"]},
]


async def seed_pipeline(session: AsyncSession) -> None:
    if await session.get(Merchant, DEV_MERCHANT_ID) is None:
        session.add(
            Merchant(
                merchant_id=DEV_MERCHANT_ID,
                merchant_name="Development Merchant",
                conversion_rate=Decimal("0.01"),
                webhook_url=os.getenv("DEV_MERCHANT_WEBHOOK_URL"),
            )
        )

    broker = (await session.execute(select(Broker).where(Broker.broker_name == DEV_BROKER_NAME))).scalar_one_or_none()
    if broker is None:
        session.add(
            Broker(
                broker_id=DEV_BROKER_NAME.lower(),
                broker_name=DEV_BROKER_NAME,
                webhook_url=os.getenv("DEV_BROKER_WEBHOOK_URL"),
                webhook_secret=os.getenv("DEV_BROKER_WEBHOOK_SECRET"),
                api_key=os.getenv("DEV_BROKER_API_KEY", "dev-broker-key"),
            )
        )

    for wallet in DEV_WALLETS:
        record = await session.get(Wallet, wallet["member_id"])
        if record is None:
            record = Wallet(member_id=wallet["member_id"], merchant_id=DEV_MERCHANT_ID)
            session.add(record)
        record.points = wallet["points"]
        record.cash_balance = Decimal(wallet["cash_balance"])
        record.sweep_enrolled = True
        record.sweep_percentage = wallet["sweep_percentage"]
        record.broker = DEV_BROKER_NAME
        record.status = WalletStatusEnum.ACTIVE

        with session.no_autoflush:
            existing = await session.execute(
                select(MemberStockPick.symbol).where(MemberStockPick.member_id == wallet["member_id"])
            )
        known = set(existing.scalars())
        for symbol in wallet["picks"]:
            if symbol not in known:
                session.add(MemberStockPick(member_id=wallet["member_id"], symbol=symbol))
    await session.commit()


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            await seed_pipeline(session)
        print("Development pipeline data ready ✅")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
