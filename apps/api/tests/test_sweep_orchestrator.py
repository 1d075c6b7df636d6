from __future__ import annotations

import json
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from pointsweep_api.core.errors import EligibilityError
from pointsweep_api.models import (
    Broker,
    Notification,
    NotificationStatusEnum,
    Order,
    OrderStatusEnum,
    PrepareBatch,
    PrepareBatchStatusEnum,
    SweepRun,
    SweepRunStatusEnum,
    Wallet,
)
from pointsweep_api.observability.pipeline import get_pipeline_store
from pointsweep_api.services.batches.preparer import BatchPreparer
from pointsweep_api.services.notifications.signing import SIGNATURE_HEADER, sign
from pointsweep_api.services.sweep.orchestrator import SweepOrchestrator

from conftest import MARKET_OPEN_AT, WEEKEND_AT, seed_counterparties, seed_member


async def _approved_batch(session_factory) -> str:
    await seed_counterparties(session_factory)
    await seed_member(session_factory, "MEM1", broker="Alpaca")
    await seed_member(session_factory, "MEM2", broker="Robinhood", points=1500, cash_balance="15.00")
    await seed_member(session_factory, "MEM3", broker="Schwab", points=500, cash_balance="30.00")
    preparer = BatchPreparer(session_factory, clock=lambda: MARKET_OPEN_AT)
    batch = (await preparer.prepare(merchant_id="M1")).batch
    await preparer.approve(batch.id)
    return batch.id


def _orchestrator(session_factory, delivery, calendar, now=MARKET_OPEN_AT) -> SweepOrchestrator:
    return SweepOrchestrator(session_factory, delivery=delivery, calendar=calendar, clock=lambda: now)


@pytest.mark.asyncio
async def test_sweep_places_one_notification_per_merchant_and_broker(
    session_factory, delivery, calendar, broker_endpoint
):
    batch_id = await _approved_batch(session_factory)

    result = await _orchestrator(session_factory, delivery, calendar).run()
    summary = result.as_dict()

    assert summary["status"] == "completed"
    assert summary["orders_promoted"] == 3
    assert summary["orders_processed"] == 3
    assert summary["orders_confirmed"] == 3
    assert summary["orders_failed"] == 0
    assert summary["merchants_processed"] == 1
    assert summary["brokers_notified"] == ["Alpaca", "Robinhood", "Schwab"]
    assert summary["errors"] == []
    assert summary["batches"][0]["batch_status"] == "submitted"
    assert len(broker_endpoint.requests) == 3
    assert {request.url.host for request in broker_endpoint.requests} == {
        "alpaca.test",
        "robinhood.test",
        "schwab.test",
    }

    run_id = summary["sweep_run_ids"][0]
    alpaca_request = broker_endpoint.to("alpaca.test")[0]
    body = alpaca_request.content.decode("utf-8")
    assert alpaca_request.headers[SIGNATURE_HEADER] == sign(body, "alpaca-secret")
    assert alpaca_request.headers["X-Event-Type"] == "order.placed"
    assert alpaca_request.headers["Authorization"] == "Bearer alpaca-key"
    payload = json.loads(body)
    assert payload["batch_id"] == run_id
    assert payload["prepare_batch_id"] == batch_id
    assert payload["broker"] == "Alpaca"
    assert payload["total_orders"] == 1
    assert payload["orders"][0]["member_id"] == "MEM1"
    assert payload["orders"][0]["amount"] == 20.0

    async with session_factory() as session:
        orders = (await session.execute(select(Order).order_by(Order.member_id))).scalars().all()
        batch = await session.get(PrepareBatch, batch_id)
        run = await session.get(SweepRun, run_id)
        wallets = {wallet.member_id: wallet for wallet in (await session.execute(select(Wallet))).scalars()}
        notifications = (await session.execute(select(Notification))).scalars().all()

    assert [order.status for order in orders] == [OrderStatusEnum.PLACED] * 3
    assert all(order.sweep_run_id == run_id for order in orders)
    assert orders[0].broker_reference.startswith("BRK-ALPACA-")
    assert batch.status == PrepareBatchStatusEnum.SUBMITTED
    assert batch.sweep_claim is None
    assert run.status == SweepRunStatusEnum.COMPLETED
    assert run.orders_processed == 3
    assert sorted(run.brokers_notified) == ["Alpaca", "Robinhood", "Schwab"]
    assert wallets["MEM1"].points == 0
    assert wallets["MEM1"].cash_balance == Decimal("0")
    assert wallets["MEM3"].points == 0
    assert wallets["MEM3"].cash_balance == Decimal("25.00")
    assert len(notifications) == 3
    assert all(notification.status == NotificationStatusEnum.SENT for notification in notifications)
    assert all(notification.correlation_id == run_id for notification in notifications)

    assert get_pipeline_store().snapshot().sweep_totals["runs"] == 1


@pytest.mark.asyncio
async def test_market_closed_sweep_writes_nothing(session_factory, delivery, calendar, broker_endpoint):
    batch_id = await _approved_batch(session_factory)

    result = await _orchestrator(session_factory, delivery, calendar, now=WEEKEND_AT).run()
    summary = result.as_dict()

    assert summary["status"] == "market_closed"
    assert summary["delay_reason"] == "weekend"
    assert summary["next_market_open"].startswith("2026-10-19T09:30:00")
    assert summary["orders_processed"] == 0
    assert broker_endpoint.requests == []

    async with session_factory() as session:
        assert await session.scalar(select(func.count(Order.id))) == 0
        assert await session.scalar(select(func.count(SweepRun.id))) == 0
        assert await session.scalar(select(func.count(Notification.id))) == 0
        batch = await session.get(PrepareBatch, batch_id)
        wallet = await session.get(Wallet, "MEM1")
    assert batch.status == PrepareBatchStatusEnum.APPROVED
    assert wallet.points == 2000
    assert get_pipeline_store().snapshot().sweep_totals["market_closed"] == 1


@pytest.mark.asyncio
async def test_sweep_without_approved_batches(session_factory, delivery, calendar):
    await seed_counterparties(session_factory)
    await seed_member(session_factory, "MEM1")
    await BatchPreparer(session_factory).prepare()

    result = await _orchestrator(session_factory, delivery, calendar).run()

    assert result.status == "no_batches"
    async with session_factory() as session:
        assert await session.scalar(select(func.count(Order.id))) == 0


@pytest.mark.asyncio
async def test_failed_group_stays_pending_until_retry(session_factory, delivery, calendar, broker_endpoint):
    batch_id = await _approved_batch(session_factory)
    broker_endpoint.failing_hosts.add("robinhood.test")
    orchestrator = _orchestrator(session_factory, delivery, calendar)

    summary = (await orchestrator.run()).as_dict()

    assert summary["orders_processed"] == 3
    assert summary["orders_confirmed"] == 2
    assert summary["orders_failed"] == 1
    assert summary["errors"] == [
        {"merchant_id": "M1", "broker": "Robinhood", "error": "HTTP 503", "order_ids": [2]}
    ]
    assert summary["batches"][0]["batch_status"] == "approved"

    async with session_factory() as session:
        robinhood_order = (await session.execute(select(Order).where(Order.broker == "Robinhood"))).scalar_one()
        failed = (
            await session.execute(select(Notification).where(Notification.status == NotificationStatusEnum.FAILED))
        ).scalar_one()
    assert robinhood_order.status == OrderStatusEnum.PENDING
    assert failed.response_code == 503

    broker_endpoint.failing_hosts.clear()
    retried = (await orchestrator.retry_failed(batch_id)).as_dict()

    assert retried["orders_promoted"] == 0
    assert retried["orders_processed"] == 1
    assert retried["orders_confirmed"] == 1
    assert retried["brokers_notified"] == ["Robinhood"]
    assert retried["batches"][0]["batch_status"] == "submitted"
    assert len(broker_endpoint.to("robinhood.test")) == 2

    with pytest.raises(EligibilityError):
        await orchestrator.retry_failed(batch_id)


@pytest.mark.asyncio
async def test_member_short_on_balance_is_skipped_at_promotion(session_factory, delivery, calendar):
    batch_id = await _approved_batch(session_factory)
    async with session_factory() as session:
        await session.execute(update(Wallet).where(Wallet.member_id == "MEM2").values(cash_balance=Decimal("1.00")))
        await session.commit()

    summary = (await _orchestrator(session_factory, delivery, calendar).run()).as_dict()

    assert summary["orders_promoted"] == 2
    assert summary["batches"][0]["skipped_members"] == [
        {"member_id": "MEM2", "merchant_id": "M1", "broker": "Robinhood", "reason": "insufficient_balance"}
    ]
    assert summary["batches"][0]["batch_status"] == "submitted"
    async with session_factory() as session:
        wallet = await session.get(Wallet, "MEM2")
        assert wallet.points == 1500
        assert wallet.cash_balance == Decimal("1.00")
        assert await session.scalar(select(func.count(Order.id)).where(Order.member_id == "MEM2")) == 0


@pytest.mark.asyncio
async def test_claimed_batch_is_left_to_its_sweep(session_factory, delivery, calendar, broker_endpoint):
    batch_id = await _approved_batch(session_factory)
    async with session_factory() as session:
        await session.execute(
            update(PrepareBatch)
            .where(PrepareBatch.id == batch_id)
            .values(sweep_claim="SWP-other", sweep_claimed_at=MARKET_OPEN_AT - timedelta(minutes=1))
        )
        await session.commit()

    result = await _orchestrator(session_factory, delivery, calendar).run()

    assert result.batches == []
    assert result.skipped_batches == [{"batch_id": batch_id, "reason": "claimed_by_another_sweep"}]
    assert broker_endpoint.requests == []


@pytest.mark.asyncio
async def test_stale_claim_is_taken_over(session_factory, delivery, calendar):
    batch_id = await _approved_batch(session_factory)
    async with session_factory() as session:
        await session.execute(
            update(PrepareBatch)
            .where(PrepareBatch.id == batch_id)
            .values(sweep_claim="SWP-crashed", sweep_claimed_at=MARKET_OPEN_AT - timedelta(hours=2))
        )
        await session.commit()

    result = await _orchestrator(session_factory, delivery, calendar).run()

    assert [outcome.batch_id for outcome in result.batches] == [batch_id]
    assert result.batches[0].batch_status == "submitted"


@pytest.mark.asyncio
async def test_preview_reports_groups_without_writing(session_factory, delivery, calendar, broker_endpoint):
    batch_id = await _approved_batch(session_factory)

    preview = await _orchestrator(session_factory, delivery, calendar).preview("M1")

    assert preview["would_run"] is True
    assert preview["batches"] == [batch_id]
    assert preview["total_orders"] == 3
    assert preview["total_amount"] == 40.0
    assert [(group["broker"], group["staged"], group["endpoint_registered"]) for group in preview["groups"]] == [
        ("Alpaca", 1, True),
        ("Robinhood", 1, True),
        ("Schwab", 1, True),
    ]
    assert broker_endpoint.requests == []
    async with session_factory() as session:
        assert await session.scalar(select(func.count(Order.id))) == 0


@pytest.mark.asyncio
async def test_malformed_broker_endpoint_fails_only_its_group(session_factory, delivery, calendar, broker_endpoint):
    batch_id = await _approved_batch(session_factory)
    async with session_factory() as session:
        await session.execute(
            update(Broker).where(Broker.broker_name == "Alpaca").values(webhook_url="http://alpaca.test:notaport/hook")
        )
        await session.commit()

    summary = (await _orchestrator(session_factory, delivery, calendar).run()).as_dict()

    assert summary["status"] == "completed"
    assert summary["orders_confirmed"] == 2
    assert summary["orders_failed"] == 1
    assert summary["brokers_notified"] == ["Robinhood", "Schwab"]
    assert [(error["broker"], error["order_ids"]) for error in summary["errors"]] == [("Alpaca", [1])]
    assert summary["batches"][0]["batch_status"] == "approved"
    assert len(broker_endpoint.to("robinhood.test")) == 1
    assert len(broker_endpoint.to("schwab.test")) == 1

    async with session_factory() as session:
        alpaca_order = (await session.execute(select(Order).where(Order.broker == "Alpaca"))).scalar_one()
        notification = (
            await session.execute(select(Notification).where(Notification.target_name == "Alpaca"))
        ).scalar_one()
        run = (await session.execute(select(SweepRun).where(SweepRun.batch_id == batch_id))).scalar_one()
        batch = await session.get(PrepareBatch, batch_id)
    assert alpaca_order.status == OrderStatusEnum.PENDING
    assert notification.status == NotificationStatusEnum.FAILED
    assert notification.response_code is None
    assert notification.error_message
    assert run.status == SweepRunStatusEnum.COMPLETED
    assert run.errors[0]["broker"] == "Alpaca"
    assert batch.sweep_claim is None


@pytest.mark.asyncio
async def test_only_approved_batches_are_promoted(session_factory, delivery, calendar, broker_endpoint):
    await seed_counterparties(session_factory)
    await seed_member(session_factory, "MEM1", broker="Alpaca")
    await seed_member(session_factory, "MEM2", broker="Robinhood")
    await seed_member(session_factory, "MEM3", broker="Schwab")
    preparer = BatchPreparer(session_factory, clock=lambda: MARKET_OPEN_AT)
    draft = (await preparer.prepare(member_id="MEM1")).batch
    discarded = (await preparer.prepare(member_id="MEM2")).batch
    approved = (await preparer.prepare(member_id="MEM3")).batch
    await preparer.discard(discarded.id)
    await preparer.approve(approved.id)

    result = await _orchestrator(session_factory, delivery, calendar).run()

    assert [outcome.batch_id for outcome in result.batches] == [approved.id]
    assert {request.url.host for request in broker_endpoint.requests} == {"schwab.test"}
    async with session_factory() as session:
        orders = (await session.execute(select(Order))).scalars().all()
        statuses = {
            batch.id: batch.status
            for batch in (await session.execute(select(PrepareBatch))).scalars()
        }
        untouched = {
            wallet.member_id: wallet.points
            for wallet in (await session.execute(select(Wallet).where(Wallet.member_id.in_(["MEM1", "MEM2"])))).scalars()
        }
    assert [(order.member_id, order.batch_id) for order in orders] == [("MEM3", approved.id)]
    assert statuses[draft.id] == PrepareBatchStatusEnum.DRAFT
    assert statuses[discarded.id] == PrepareBatchStatusEnum.DISCARDED
    assert statuses[approved.id] == PrepareBatchStatusEnum.SUBMITTED
    assert untouched == {"MEM1": 2000, "MEM2": 2000}
