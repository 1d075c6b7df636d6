from __future__ import annotations

from decimal import Decimal

import pytest

from pointsweep_api.core.errors import EligibilityError
from pointsweep_api.models import Wallet, WalletStatusEnum
from pointsweep_api.services.wallets import WalletLedger

from conftest import seed_counterparties, seed_member


@pytest.mark.asyncio
async def test_read_returns_snapshot_or_none(session_factory):
    await seed_counterparties(session_factory)
    await seed_member(session_factory, "MEM1", conversion_rate=Decimal("0.02"), status=WalletStatusEnum.SUSPENDED)

    async with session_factory() as session:
        ledger = WalletLedger(session)
        snapshot = await ledger.read("MEM1")
        missing = await ledger.read("MEM404")

    assert missing is None
    assert snapshot.points == 2000
    assert snapshot.cash_balance == Decimal("20.00")
    assert snapshot.conversion_rate == Decimal("0.02")
    assert snapshot.broker == "Alpaca"
    assert not snapshot.is_active


@pytest.mark.asyncio
async def test_read_many_accepts_any_iterable(session_factory):
    await seed_counterparties(session_factory)
    await seed_member(session_factory, "MEM1")
    await seed_member(session_factory, "MEM2", broker="Schwab", points=500)

    async with session_factory() as session:
        ledger = WalletLedger(session)
        wallets = await ledger.read_many({"MEM1": 1, "MEM2": 2, "MEM9": 3}.keys())
        empty = await ledger.read_many(iter(()))

    assert empty == {}
    assert sorted(wallets) == ["MEM1", "MEM2"]
    assert wallets["MEM2"].points == 500
    assert wallets["MEM2"].broker == "Schwab"


@pytest.mark.asyncio
async def test_overdraft_is_rejected_and_leaves_wallet_untouched(session_factory):
    await seed_counterparties(session_factory)
    await seed_member(session_factory, "MEM1")

    with pytest.raises(EligibilityError) as excinfo:
        async with session_factory() as session:
            async with session.begin():
                await WalletLedger(session).apply("MEM1", points_delta=-2500, cash_delta=Decimal("-5.00"))
    assert excinfo.value.details == {"member_id": "MEM1"}

    async with session_factory() as session:
        async with session.begin():
            await WalletLedger(session).apply("MEM1", points_delta=-500, cash_delta=Decimal("-5.00"))

    async with session_factory() as session:
        wallet = await session.get(Wallet, "MEM1")
    assert wallet.points == 1500
    assert wallet.cash_balance == Decimal("15.00")
