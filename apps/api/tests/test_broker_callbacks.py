from __future__ import annotations

import json
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from pointsweep_api.core.errors import AuthenticationError, ValidationError
from pointsweep_api.models import BrokerEventReceipt, Order, OrderStatusEnum, Wallet
from pointsweep_api.observability.pipeline import get_pipeline_store
from pointsweep_api.services.callbacks.broker_events import BrokerCallbackHandler, extract_fill
from pointsweep_api.services.notifications.signing import sign

from conftest import MARKET_OPEN_AT, seed_counterparties, seed_member

BASKET = "PREP-20261014-150000-abc123-MEM1"


async def _orders(session_factory, *specs) -> list[int]:
    ids = []
    async with session_factory() as session:
        for symbol, status in specs:
            order = Order(
                member_id="MEM1",
                merchant_id="M1",
                basket_id=BASKET,
                symbol=symbol,
                amount=Decimal("10.00"),
                points_used=1000,
                status=status,
                broker="Alpaca",
                broker_reference="BRK-ALPACA-1",
            )
            session.add(order)
            await session.flush()
            ids.append(order.id)
        await session.commit()
    return ids


def _handler(session_factory, **kwargs) -> BrokerCallbackHandler:
    return BrokerCallbackHandler(session_factory, clock=lambda: MARKET_OPEN_AT, **kwargs)


async def _status(session_factory, order_id: int) -> OrderStatusEnum:
    async with session_factory() as session:
        return (await session.get(Order, order_id)).status


def test_extract_fill_derives_amount():
    fill = extract_fill({"executed_price": "200", "executed_shares": "0.05"})
    assert fill.amount == Decimal("10.00")
    assert extract_fill({"executed_price": "200"}) is None


@pytest.mark.asyncio
async def test_confirmation_is_applied_once(session_factory):
    await seed_counterparties(session_factory)
    (order_id,) = await _orders(session_factory, ("AAPL", OrderStatusEnum.PLACED))
    handler = _handler(session_factory)
    payload = {
        "order_id": order_id,
        "executed_price": 200.0,
        "executed_shares": 0.05,
        "executed_amount": 10.0,
        "exec_id": "EX-1",
    }

    first = await handler.handle("order.confirmed", payload, api_key="alpaca-key", request_id="req-1")
    second = await handler.handle("order_confirmed", payload, api_key="alpaca-key", request_id="req-2")

    assert first.as_dict()["orders_updated"] == 1
    assert first.broker == "Alpaca"
    assert second.as_dict()["counts"]["duplicate"] == 1
    assert second.as_dict()["orders_updated"] == 0

    async with session_factory() as session:
        order = await session.get(Order, order_id)
        receipts = (await session.execute(select(BrokerEventReceipt))).scalars().all()
    assert order.status == OrderStatusEnum.CONFIRMED
    assert order.executed_price == Decimal("200")
    assert len(receipts) == 1
    assert receipts[0].exec_reference == "EX-1"
    assert receipts[0].request_id == "req-1"

    totals = get_pipeline_store().snapshot().callback_totals
    assert totals["applied"]["order.confirmed"] == 1
    assert totals["duplicate"]["order.confirmed"] == 1


@pytest.mark.asyncio
async def test_execution_reuses_confirmed_fill(session_factory):
    (order_id,) = await _orders(session_factory, ("AAPL", OrderStatusEnum.PLACED))
    handler = _handler(session_factory)
    await handler.handle(
        "order.confirmed",
        {"order_id": order_id, "executed_price": 200, "executed_shares": 0.05},
    )

    result = await handler.handle("order.executed", {"order_id": order_id})

    assert result.results == [{"order_id": order_id, "outcome": "applied", "status": "executed"}]
    async with session_factory() as session:
        order = await session.get(Order, order_id)
    assert order.executed_amount == Decimal("10.00")
    assert order.executed_at is not None


@pytest.mark.asyncio
async def test_confirmation_without_fill_is_held(session_factory):
    (order_id,) = await _orders(session_factory, ("AAPL", OrderStatusEnum.PLACED))
    handler = _handler(session_factory)

    held = await handler.handle("order.confirmed", {"order_id": order_id})
    assert held.results[0]["outcome"] == "held"
    assert await _status(session_factory, order_id) == OrderStatusEnum.PLACED

    applied = await handler.handle(
        "order.confirmed",
        {"order_id": order_id, "price": 100, "shares": 0.1},
    )
    assert applied.results[0]["outcome"] == "applied"
    assert await _status(session_factory, order_id) == OrderStatusEnum.CONFIRMED


@pytest.mark.asyncio
async def test_late_and_conflicting_events(session_factory):
    executed_id, cancelled_id = await _orders(
        session_factory,
        ("AAPL", OrderStatusEnum.EXECUTED),
        ("MSFT", OrderStatusEnum.CANCELLED),
    )
    handler = _handler(session_factory)

    late = await handler.handle("order.confirmed", {"order_id": executed_id, "price": 1, "shares": 1})
    conflict = await handler.handle("order.executed", {"order_id": cancelled_id, "price": 1, "shares": 1})
    missing = await handler.handle("order.executed", {"order_id": 999})

    assert late.results[0]["outcome"] == "already_applied"
    assert conflict.results[0] == {"order_id": cancelled_id, "outcome": "conflict", "status": "cancelled"}
    assert missing.results[0]["outcome"] == "not_found"
    assert await _status(session_factory, cancelled_id) == OrderStatusEnum.CANCELLED

    async with session_factory() as session:
        assert await session.scalar(select(func.count(BrokerEventReceipt.id))) == 1


@pytest.mark.asyncio
async def test_basket_and_symbol_targeting(session_factory):
    aapl_id, msft_id = await _orders(
        session_factory,
        ("AAPL", OrderStatusEnum.PENDING),
        ("MSFT", OrderStatusEnum.PENDING),
    )
    handler = _handler(session_factory)

    acked = await handler.handle("sweep.orders", {"basket_id": BASKET, "broker_batch_id": "BRK-77"})
    assert acked.broker_batch_id == "BRK-77"
    assert [item["order_id"] for item in acked.results] == [aapl_id, msft_id]
    assert acked.canonical_event == "order.acknowledged"

    executed = await handler.handle(
        "order.executed",
        {"fills": [{"basket_id": BASKET, "symbol": "msft", "executed_price": 400, "executed_shares": 0.025}]},
    )
    assert executed.results == [{"order_id": msft_id, "outcome": "applied", "status": "executed"}]
    assert await _status(session_factory, aapl_id) == OrderStatusEnum.PLACED


@pytest.mark.asyncio
async def test_rejection_fails_order_and_refunds(session_factory):
    await seed_member(session_factory, "MEM1", points=0, cash_balance="0")
    (order_id,) = await _orders(session_factory, ("AAPL", OrderStatusEnum.PLACED))

    result = await _handler(session_factory).handle(
        "order.rejected",
        {"order_id": order_id, "reason": "symbol halted"},
    )

    assert result.results[0]["status"] == "failed"
    async with session_factory() as session:
        order = await session.get(Order, order_id)
        wallet = await session.get(Wallet, "MEM1")
    assert order.failure_reason == "symbol halted"
    assert wallet.points == 1000
    assert wallet.cash_balance == Decimal("10.00")


@pytest.mark.asyncio
async def test_unknown_event_and_empty_payload_are_rejected(session_factory):
    handler = _handler(session_factory)

    with pytest.raises(ValidationError) as excinfo:
        await handler.handle("order.teleported", {"order_id": 1})
    assert "order.confirmed" in excinfo.value.details["supported_events"]

    with pytest.raises(ValidationError):
        await handler.handle("order.confirmed", {})


@pytest.mark.asyncio
async def test_signature_is_enforced_when_required(session_factory):
    await seed_counterparties(session_factory)
    (order_id,) = await _orders(session_factory, ("AAPL", OrderStatusEnum.PENDING))
    handler = _handler(session_factory, signature_required=True)
    body = json.dumps({"order_id": order_id}).encode("utf-8")

    with pytest.raises(AuthenticationError):
        await handler.handle("order.acknowledged", {"order_id": order_id}, raw_body=body, signature="sha256=bad")
    with pytest.raises(AuthenticationError):
        await handler.handle(
            "order.acknowledged",
            {"order_id": order_id},
            api_key="alpaca-key",
            raw_body=body,
            signature="sha256=bad",
        )

    result = await handler.handle(
        "order.acknowledged",
        {"order_id": order_id},
        api_key="alpaca-key",
        raw_body=body,
        signature=sign(body, "alpaca-secret"),
    )
    assert result.results[0]["outcome"] == "applied"


@pytest.mark.asyncio
async def test_connection_and_credential_checks(session_factory):
    await seed_counterparties(session_factory)
    handler = _handler(session_factory)

    ping = await handler.handle("test", {"echo": "hello"})
    valid = await handler.handle("credentials.validate", {}, api_key="schwab-key")
    invalid = await handler.handle("credentials.validate", {}, api_key="nope")

    assert ping.as_dict()["message"] == "Connection successful"
    assert ping.as_dict()["echo"] == "hello"
    assert valid.as_dict()["valid"] is True
    assert invalid.as_dict()["valid"] is False
