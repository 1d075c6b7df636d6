from __future__ import annotations

import json
from dataclasses import replace

import pytest

from pointsweep_api.core.errors import EligibilityError, NotFoundError
from pointsweep_api.models import Broker, Notification, NotificationStatusEnum, NotificationTargetTypeEnum
from pointsweep_api.observability.pipeline import get_pipeline_store
from pointsweep_api.services.notifications.delivery import NO_ENDPOINT_ERROR
from pointsweep_api.services.notifications.signing import SIGNATURE_HEADER, canonical_json, sign, verify
from pointsweep_api.services.notifications.targets import TargetDirectory, broker_target

from conftest import seed_counterparties


async def _broker_target(session_factory, name: str = "Alpaca"):
    async with session_factory() as session:
        return await TargetDirectory(session).broker(name)


def test_signature_round_trip_over_exact_body():
    body = canonical_json({"b": 1, "a": [1, 2]})
    assert body == '{"a":[1,2],"b":1}'

    signature = sign(body, "secret")
    assert signature.startswith("sha256=")
    assert verify(body.encode("utf-8"), "secret", signature)
    assert verify(body, "secret", signature.removeprefix("sha256="))
    assert not verify(body + " ", "secret", signature)
    assert not verify(body, "other", signature)
    assert not verify(body, "secret", None)


@pytest.mark.asyncio
async def test_send_signs_and_records_delivery(session_factory, delivery, broker_endpoint):
    await seed_counterparties(session_factory)
    target = await _broker_target(session_factory)

    result = await delivery.send(target, "order.placed", {"orders": [{"order_id": 1}]}, correlation_id="SWP-1")

    assert result.success
    assert result.response_code == 200
    assert result.external_reference == "BRK-ALPACA-1"
    request = broker_endpoint.requests[0]
    assert request.headers[SIGNATURE_HEADER] == sign(request.content, "alpaca-secret")
    assert json.loads(request.content) == {"orders": [{"order_id": 1}]}

    async with session_factory() as session:
        stored = await session.get(Notification, result.notification_id)
    assert stored.status == NotificationStatusEnum.SENT
    assert stored.payload == request.content.decode("utf-8")
    assert stored.external_reference == "BRK-ALPACA-1"
    assert stored.attempts == 1
    assert stored.sent_at is not None


@pytest.mark.asyncio
async def test_timeout_marks_failed_and_retry_delivers(session_factory, delivery, broker_endpoint):
    await seed_counterparties(session_factory)
    target = await _broker_target(session_factory)
    broker_endpoint.timeout_hosts.add("alpaca.test")

    failed = await delivery.send(target, "order.placed", {"batch_id": "SWP-1"})

    assert failed.status == NotificationStatusEnum.FAILED
    assert failed.error == "timed out"
    snapshot = get_pipeline_store().snapshot()
    assert snapshot.delivery_totals["failed"]["order.placed"] == 1
    assert snapshot.delivery_events.last_failure_target == "broker:Alpaca"

    broker_endpoint.timeout_hosts.clear()
    retried = await delivery.retry(failed.notification_id)

    assert retried.success
    assert len(broker_endpoint.requests) == 2
    assert broker_endpoint.requests[0].content == broker_endpoint.requests[1].content
    async with session_factory() as session:
        stored = await session.get(Notification, failed.notification_id)
    assert stored.status == NotificationStatusEnum.SENT
    assert stored.attempts == 2
    assert stored.error_message is None

    with pytest.raises(EligibilityError):
        await delivery.retry(failed.notification_id)
    with pytest.raises(NotFoundError):
        await delivery.retry(4242)


@pytest.mark.asyncio
async def test_target_without_endpoint_fails_without_http_call(session_factory, delivery, broker_endpoint):
    async with session_factory() as session:
        session.add(Broker(broker_id="webull", broker_name="Webull", is_active=True))
        await session.commit()
        broker = await session.get(Broker, "webull")
    target = broker_target(broker)

    result = await delivery.send(target, "order.placed", {"batch_id": "SWP-2"}, merchant_id="M1")
    unknown = await delivery.send(await _broker_target(session_factory, "Nowhere"), "order.placed", {})

    assert result.status == NotificationStatusEnum.FAILED
    assert result.error == NO_ENDPOINT_ERROR
    assert unknown.error == NO_ENDPOINT_ERROR
    assert broker_endpoint.requests == []


@pytest.mark.asyncio
async def test_non_success_response_is_recorded(session_factory, delivery, broker_endpoint):
    await seed_counterparties(session_factory)
    broker_endpoint.failing_hosts.add("schwab.test")

    result = await delivery.send(await _broker_target(session_factory, "Schwab"), "order.placed", {})

    assert result.error == "HTTP 503"
    async with session_factory() as session:
        stored = await session.get(Notification, result.notification_id)
    assert stored.response_code == 503
    assert "unavailable" in stored.response_body


@pytest.mark.asyncio
async def test_list_filters_ledger(session_factory, delivery, broker_endpoint):
    await seed_counterparties(session_factory)
    broker_endpoint.failing_hosts.add("robinhood.test")
    await delivery.send(await _broker_target(session_factory, "Alpaca"), "order.placed", {}, correlation_id="SWP-1")
    await delivery.send(await _broker_target(session_factory, "Robinhood"), "order.placed", {}, correlation_id="SWP-1")
    async with session_factory() as session:
        merchant = await TargetDirectory(session).merchant("M1")
    await delivery.send(merchant, "payments.settled", {}, correlation_id="ACH_M1_1", merchant_id="M1")

    failed = await delivery.list(status=NotificationStatusEnum.FAILED)
    merchants = await delivery.list(target_type=NotificationTargetTypeEnum.MERCHANT)
    sweep = await delivery.list(correlation_id="SWP-1")

    assert [row.target_name for row in failed] == ["Robinhood"]
    assert [row.event_type for row in merchants] == ["payments.settled"]
    assert [row.target_name for row in sweep] == ["Robinhood", "Alpaca"]
    assert len(await delivery.list(limit=1)) == 1


@pytest.mark.asyncio
async def test_malformed_endpoint_is_recorded_as_failed(session_factory, delivery, broker_endpoint):
    await seed_counterparties(session_factory)
    target = replace(await _broker_target(session_factory), url="http://alpaca.test:notaport/hook")

    result = await delivery.send(target, "order.placed", {"batch_id": "SWP-1"})

    assert result.status == NotificationStatusEnum.FAILED
    assert result.response_code is None
    assert result.error
    assert broker_endpoint.requests == []
    async with session_factory() as session:
        stored = await session.get(Notification, result.notification_id)
    assert stored.status == NotificationStatusEnum.FAILED
    assert stored.error_message == result.error
