from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from pointsweep_api.core.errors import EligibilityError, NotFoundError, ValidationError
from pointsweep_api.models import (
    Order,
    OrderStatusEnum,
    PrepareBatch,
    PrepareBatchStatusEnum,
    PreparedOrder,
    WalletStatusEnum,
)
from pointsweep_api.services.batches.allocation import PickWeight, allocate, normalise_weights, sweep_points
from pointsweep_api.services.batches.preparer import BatchPreparer

from conftest import MARKET_OPEN_AT, seed_counterparties, seed_member


def test_sweep_points_treats_zero_percentage_as_full_balance():
    assert sweep_points(2000, 0) == 2000
    assert sweep_points(2000, 50) == 1000
    assert sweep_points(2001, 33) == 660
    assert sweep_points(-5, 100) == 0


def test_custom_allocations_are_normalised():
    weights = normalise_weights([PickWeight("AAPL", Decimal("60")), PickWeight("MSFT", Decimal("20"))])
    assert weights == [Decimal("75"), Decimal("25")]

    lines = allocate(
        [PickWeight("AAPL", Decimal("60")), PickWeight("MSFT", Decimal("20"))],
        points=1000,
        amount=Decimal("10.00"),
    )
    assert [(line.symbol, line.amount, line.points) for line in lines] == [
        ("AAPL", Decimal("7.50"), 750),
        ("MSFT", Decimal("2.50"), 250),
    ]


def test_allocation_never_exceeds_member_amount():
    picks = [PickWeight("AAPL"), PickWeight("MSFT"), PickWeight("NVDA")]
    lines = allocate(picks, points=5, amount=Decimal("0.05"))

    assert sum(line.amount for line in lines) == Decimal("0.05")
    assert [line.points for line in lines] == [1, 1, 1]
    assert lines[-1].amount == Decimal("0.01")


async def _seed_population(session_factory) -> None:
    await seed_counterparties(session_factory)
    await seed_member(session_factory, "MEM1", symbols=("AAPL", "MSFT"))
    await seed_member(session_factory, "MEM2", broker="Robinhood", points=1000, cash_balance="50.00", sweep_percentage=50)
    await seed_member(session_factory, "MEM3", enrolled=False)
    await seed_member(session_factory, "MEM4", status=WalletStatusEnum.SUSPENDED)
    await seed_member(session_factory, "MEM5", cash_balance="0")
    await seed_member(session_factory, "MEM6", points=0)
    await seed_member(session_factory, "MEM7", points=4, conversion_rate=Decimal("0.001"))
    await seed_member(session_factory, "MEM8")
    async with session_factory() as session:
        session.add(
            Order(
                member_id="MEM8",
                merchant_id="M1",
                basket_id="PREP-20261001-000000-aaaaaa-MEM8",
                symbol="AAPL",
                amount=Decimal("5.00"),
                status=OrderStatusEnum.PLACED,
            )
        )
        await session.commit()


@pytest.mark.asyncio
async def test_prepare_stages_eligible_members_and_reports_skips(session_factory):
    await _seed_population(session_factory)
    preparer = BatchPreparer(session_factory, clock=lambda: MARKET_OPEN_AT)

    result = await preparer.prepare()

    batch = result.batch
    assert batch.id.startswith("PREP-20261014-150000-")
    assert batch.status == PrepareBatchStatusEnum.DRAFT
    assert batch.total_members == 2
    assert batch.total_orders == 3
    assert batch.total_amount == Decimal("25.00")
    assert batch.total_points == 2500
    assert batch.members_skipped == 6
    assert result.skipped == {
        "MEM3": "not_enrolled",
        "MEM4": "wallet_inactive",
        "MEM5": "no_cash_balance",
        "MEM6": "no_points",
        "MEM7": "nothing_to_sweep",
        "MEM8": "open_order",
    }

    async with session_factory() as session:
        lines = (
            await session.execute(
                select(PreparedOrder).where(PreparedOrder.batch_id == batch.id).order_by(PreparedOrder.id)
            )
        ).scalars().all()
        live_orders = await session.scalar(select(func.count(Order.id)))

    assert [(line.member_id, line.symbol, line.amount, line.points_used) for line in lines] == [
        ("MEM1", "AAPL", Decimal("10.00"), 1000),
        ("MEM1", "MSFT", Decimal("10.00"), 1000),
        ("MEM2", "AAPL", Decimal("5.00"), 500),
    ]
    assert {line.basket_id for line in lines} == {f"{batch.id}-MEM1", f"{batch.id}-MEM2"}
    assert lines[2].broker == "Robinhood"
    assert lines[2].sweep_percentage == 50
    # Preparation never creates live orders.
    assert live_orders == 1


@pytest.mark.asyncio
async def test_prepare_scopes_by_member(session_factory):
    await _seed_population(session_factory)
    preparer = BatchPreparer(session_factory, clock=lambda: MARKET_OPEN_AT)

    result = await preparer.prepare(member_id="MEM2")

    assert result.batch.filter_member == "MEM2"
    assert result.batch.total_members == 1
    assert result.skipped == {}


@pytest.mark.asyncio
async def test_preview_counts_by_merchant(session_factory):
    await _seed_population(session_factory)
    preparer = BatchPreparer(session_factory)

    preview = await preparer.preview_counts("M1")

    assert preview["eligible_members"] == 2
    assert preview["total_picks"] == 3
    assert preview["est_total_amount"] == 25.0
    assert preview["members_skipped"] == 6
    assert preview["by_merchant"] == [
        {"merchant_id": "M1", "merchant_name": "Merchant One", "members": 2, "picks": 3, "est_amount": 25.0}
    ]
    async with session_factory() as session:
        assert await session.scalar(select(func.count(PrepareBatch.id))) == 0


@pytest.mark.asyncio
async def test_approve_and_discard_only_from_draft(session_factory):
    await _seed_population(session_factory)
    preparer = BatchPreparer(session_factory, clock=lambda: MARKET_OPEN_AT)
    first = (await preparer.prepare(member_id="MEM1")).batch
    second = (await preparer.prepare(member_id="MEM2")).batch

    approved = await preparer.approve(first.id)
    assert approved.status == PrepareBatchStatusEnum.APPROVED
    assert approved.approved_at is not None

    with pytest.raises(EligibilityError) as excinfo:
        await preparer.approve(first.id)
    assert excinfo.value.details["status"] == "approved"

    with pytest.raises(EligibilityError):
        await preparer.discard(first.id)

    discarded = await preparer.discard(second.id)
    assert discarded.status == PrepareBatchStatusEnum.DISCARDED

    with pytest.raises(NotFoundError):
        await preparer.approve("PREP-missing")
    with pytest.raises(ValidationError):
        await preparer.approve("  ")


@pytest.mark.asyncio
async def test_stats_and_drilldown(session_factory):
    await _seed_population(session_factory)
    preparer = BatchPreparer(session_factory, clock=lambda: MARKET_OPEN_AT)
    batch = (await preparer.prepare()).batch

    stats = await preparer.stats(batch.id)
    assert stats["batch"].id == batch.id
    assert stats["by_merchant"] == [
        {"merchant_id": "M1", "members": 2, "orders": 3, "total_amount": 25.0, "total_points": 2500}
    ]
    assert [row["broker"] for row in stats["by_broker"]] == ["Alpaca", "Robinhood"]
    assert stats["by_symbol"][0] == {"symbol": "AAPL", "order_count": 2, "total_amount": 15.0, "total_points": 1500}

    page = await preparer.drilldown(batch.id, page=1, per_page=1)
    assert page["total_members"] == 2
    assert page["total_pages"] == 2
    assert page["members"][0]["member_id"] == "MEM1"
    assert page["members"][0]["symbols"] == ["AAPL", "MSFT"]
    assert page["members"][0]["total_amount"] == 20.0

    filtered = await preparer.drilldown(batch.id, broker="Robinhood")
    assert [member["member_id"] for member in filtered["members"]] == ["MEM2"]

    with pytest.raises(NotFoundError):
        await preparer.drilldown("PREP-missing")
    with pytest.raises(ValidationError):
        await preparer.drilldown(batch.id, page=0)
