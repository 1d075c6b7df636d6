from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from pointsweep_api.core.errors import ConcurrencyConflict, EligibilityError
from pointsweep_api.models import (
    Order,
    OrderStateActorTypeEnum,
    OrderStateEvent,
    OrderStatusEnum,
    Wallet,
)
from pointsweep_api.services.orders.service import OrderService
from pointsweep_api.services.orders.state_machine import (
    FillData,
    InvalidOrderTransitionError,
    OrderStateMachine,
)

from conftest import MARKET_OPEN_AT, seed_member


async def _order(session_factory, status: OrderStatusEnum = OrderStatusEnum.PENDING, **fields) -> int:
    async with session_factory() as session:
        order = Order(
            member_id=fields.pop("member_id", "MEM1"),
            merchant_id="M1",
            basket_id="PREP-20261014-150000-abc123-MEM1",
            symbol="AAPL",
            shares=Decimal("0"),
            amount=Decimal("12.50"),
            points_used=1250,
            status=status,
            broker="Alpaca",
            **fields,
        )
        session.add(order)
        await session.commit()
        return order.id


@pytest.mark.asyncio
async def test_forward_transitions_record_history(session_factory):
    order_id = await _order(session_factory)

    async with session_factory() as session:
        machine = OrderStateMachine(session, clock=lambda: MARKET_OPEN_AT)
        order = await machine.get_order(order_id)
        await machine.transition(order, OrderStatusEnum.PLACED, actor_type=OrderStateActorTypeEnum.SWEEP)
        await machine.transition(
            order,
            OrderStatusEnum.CONFIRMED,
            actor_type=OrderStateActorTypeEnum.BROKER,
            fill=FillData(price=Decimal("250.00"), shares=Decimal("0.05"), amount=Decimal("12.50")),
        )
        await session.commit()

    async with session_factory() as session:
        order = await session.get(Order, order_id)
        assert order.status == OrderStatusEnum.CONFIRMED
        assert order.placed_at is not None
        assert order.confirmed_at is not None
        assert order.executed_price == Decimal("250.00")
        assert order.executed_amount == Decimal("12.50")

        events = (
            await session.execute(
                select(OrderStateEvent).where(OrderStateEvent.order_id == order_id).order_by(OrderStateEvent.id)
            )
        ).scalars().all()
        assert [(event.from_status, event.to_status) for event in events] == [
            ("pending", "placed"),
            ("placed", "confirmed"),
        ]
        assert events[1].actor_type == OrderStateActorTypeEnum.BROKER


@pytest.mark.asyncio
async def test_confirmation_requires_fill_data(session_factory):
    order_id = await _order(session_factory, OrderStatusEnum.PLACED)

    async with session_factory() as session:
        machine = OrderStateMachine(session)
        order = await machine.get_order(order_id)
        with pytest.raises(InvalidOrderTransitionError) as excinfo:
            await machine.transition(order, OrderStatusEnum.CONFIRMED)

    assert excinfo.value.status_code == 409
    assert excinfo.value.details == {"from": "placed", "to": "confirmed"}


@pytest.mark.asyncio
async def test_rejects_backward_and_terminal_transitions(session_factory):
    placed_id = await _order(session_factory, OrderStatusEnum.PLACED)
    failed_id = await _order(session_factory, OrderStatusEnum.FAILED)

    async with session_factory() as session:
        machine = OrderStateMachine(session)
        placed = await machine.get_order(placed_id)
        failed = await machine.get_order(failed_id)

        with pytest.raises(InvalidOrderTransitionError):
            await machine.transition(placed, OrderStatusEnum.PENDING)
        with pytest.raises(InvalidOrderTransitionError):
            await machine.transition(failed, OrderStatusEnum.PLACED)
        with pytest.raises(InvalidOrderTransitionError):
            await machine.transition(placed, OrderStatusEnum.PLACED)

    assert OrderStateMachine.can_transition(OrderStatusEnum.SETTLED, OrderStatusEnum.SELL)
    assert not OrderStateMachine.can_transition(OrderStatusEnum.SOLD, OrderStatusEnum.SELL)
    assert OrderStateMachine.has_reached(OrderStatusEnum.EXECUTED, OrderStatusEnum.CONFIRMED)
    assert not OrderStateMachine.has_reached(OrderStatusEnum.CANCELLED, OrderStatusEnum.PLACED)


@pytest.mark.asyncio
async def test_confirmed_order_settles_only_through_payment(session_factory):
    order_id = await _order(
        session_factory,
        OrderStatusEnum.CONFIRMED,
        executed_price=Decimal("250"),
        executed_shares=Decimal("0.05"),
        executed_amount=Decimal("12.50"),
    )

    async with session_factory() as session:
        machine = OrderStateMachine(session)
        order = await machine.get_order(order_id)
        with pytest.raises(InvalidOrderTransitionError):
            await machine.transition(order, OrderStatusEnum.SETTLED)


@pytest.mark.asyncio
async def test_cancelling_funded_order_refunds_wallet(session_factory):
    await seed_member(session_factory, "MEM1", points=750, cash_balance="7.50")
    order_id = await _order(session_factory, OrderStatusEnum.PLACED)

    service = OrderService(session_factory)
    cancelled = await service.cancel(order_id, actor_label="ops@pointsweep")

    assert cancelled.status == OrderStatusEnum.CANCELLED
    async with session_factory() as session:
        wallet = await session.get(Wallet, "MEM1")
        assert wallet.points == 2000
        assert wallet.cash_balance == Decimal("20.00")

    detail = await service.get(order_id)
    assert detail.history[-1].to_status == "cancelled"
    assert detail.history[-1].actor_label == "ops@pointsweep"

    with pytest.raises(EligibilityError):
        await service.cancel(order_id)


@pytest.mark.asyncio
async def test_unfilled_confirmation_is_held_until_budget_is_spent(session_factory):
    await seed_member(session_factory, "MEM1", points=0, cash_balance="0")
    order_id = await _order(session_factory, OrderStatusEnum.PLACED)

    async with session_factory() as session:
        machine = OrderStateMachine(session, confirmation_retry_budget=2)
        order = await machine.get_order(order_id)
        assert await machine.record_unfilled_confirmation(order) == OrderStatusEnum.PLACED
        assert await machine.record_unfilled_confirmation(order) == OrderStatusEnum.FAILED
        await session.commit()

    async with session_factory() as session:
        order = await session.get(Order, order_id)
        wallet = await session.get(Wallet, "MEM1")
        assert order.status == OrderStatusEnum.FAILED
        assert order.confirmation_attempts == 2
        assert "No fill data" in order.failure_reason
        assert wallet.points == 1250
        assert wallet.cash_balance == Decimal("12.50")


@pytest.mark.asyncio
async def test_sale_flag_moves_only_settled_orders(session_factory):
    settled_id = await _order(session_factory, OrderStatusEnum.SETTLED, paid_flag=True)
    placed_id = await _order(session_factory, OrderStatusEnum.PLACED)

    service = OrderService(session_factory)
    result = await service.mark_for_sale([settled_id, placed_id, 9999])

    assert result.updated == [settled_id]
    assert {item["order_id"]: item["reason"] for item in result.skipped} == {
        placed_id: "status is placed",
        9999: "not_found",
    }

    reverted = await service.revert_sale([settled_id])
    assert reverted.updated == [settled_id]
    detail = await service.get(settled_id)
    assert detail.order.status == OrderStatusEnum.SETTLED


@pytest.mark.asyncio
async def test_stale_read_cannot_confirm_a_cancelled_order(session_factory):
    await seed_member(session_factory, "MEM1", points=750, cash_balance="7.50")
    order_id = await _order(session_factory, OrderStatusEnum.PLACED)

    async with session_factory() as stale_session:
        machine = OrderStateMachine(stale_session, clock=lambda: MARKET_OPEN_AT)
        stale_order = await machine.get_order(order_id)

        await OrderService(session_factory).cancel(order_id, actor_label="member")

        with pytest.raises(ConcurrencyConflict) as excinfo:
            await machine.transition(
                stale_order,
                OrderStatusEnum.CONFIRMED,
                actor_type=OrderStateActorTypeEnum.BROKER,
                fill=FillData(price=Decimal("250.00"), shares=Decimal("0.05"), amount=Decimal("12.50")),
            )
        await stale_session.rollback()

    assert excinfo.value.details == {"order_id": order_id, "expected": "placed", "status": "cancelled"}
    async with session_factory() as session:
        order = await session.get(Order, order_id)
        wallet = await session.get(Wallet, "MEM1")
        transitions = (
            await session.execute(select(OrderStateEvent.to_status).where(OrderStateEvent.order_id == order_id))
        ).scalars().all()
    assert order.status == OrderStatusEnum.CANCELLED
    assert order.executed_price is None
    assert wallet.points == 2000
    assert wallet.cash_balance == Decimal("20.00")
    assert transitions == ["cancelled"]


@pytest.mark.asyncio
async def test_stale_cancel_after_confirmation_is_a_conflict(session_factory):
    await seed_member(session_factory, "MEM1", points=750, cash_balance="7.50")
    order_id = await _order(session_factory, OrderStatusEnum.PLACED)

    async with session_factory() as stale_session:
        machine = OrderStateMachine(stale_session)
        stale_order = await machine.get_order(order_id)

        async with session_factory() as broker_session:
            broker_machine = OrderStateMachine(broker_session)
            await broker_machine.transition(
                await broker_machine.get_order(order_id),
                OrderStatusEnum.CONFIRMED,
                fill=FillData(price=Decimal("250.00"), shares=Decimal("0.05"), amount=Decimal("12.50")),
            )
            await broker_session.commit()

        with pytest.raises(ConcurrencyConflict):
            await machine.transition(stale_order, OrderStatusEnum.CANCELLED)
        await stale_session.rollback()

    async with session_factory() as session:
        order = await session.get(Order, order_id)
        wallet = await session.get(Wallet, "MEM1")
    assert order.status == OrderStatusEnum.CONFIRMED
    assert wallet.points == 750
    assert wallet.cash_balance == Decimal("7.50")
