"""Service builders shared by the v1 endpoints."""

from __future__ import annotations

import httpx
from fastapi import Depends, Request

from pointsweep_api.core.settings import settings
from pointsweep_api.db.session import SessionFactory, get_session_factory
from pointsweep_api.services.batches.preparer import BatchPreparer
from pointsweep_api.services.callbacks.broker_events import BrokerCallbackHandler
from pointsweep_api.services.lineage.tracer import LineageTracer
from pointsweep_api.services.market_calendar import MarketCalendar
from pointsweep_api.services.notifications.delivery import NotificationDelivery
from pointsweep_api.services.orders.service import OrderService
from pointsweep_api.services.settlement.bank_transfers import BankTransferService, HttpBankTransferClient
from pointsweep_api.services.settlement.payments import PaymentSettlement
from pointsweep_api.services.sweep.orchestrator import SweepOrchestrator


def get_http_client(request: Request) -> httpx.AsyncClient | None:
    """Shared outbound client opened by the app lifespan, if any."""

    return getattr(request.app.state, "http_client", None)


def get_market_calendar() -> MarketCalendar:
    return MarketCalendar(exchange=settings.market_exchange, holidays=settings.market_holidays)


def get_notification_delivery(
    session_factory: SessionFactory = Depends(get_session_factory),
    http_client: httpx.AsyncClient | None = Depends(get_http_client),
) -> NotificationDelivery:
    return NotificationDelivery(
        session_factory,
        http_client=http_client,
        timeout_seconds=settings.webhook_timeout_seconds,
        connect_timeout_seconds=settings.webhook_connect_timeout_seconds,
        user_agent=settings.webhook_user_agent,
    )


def get_batch_preparer(session_factory: SessionFactory = Depends(get_session_factory)) -> BatchPreparer:
    return BatchPreparer(session_factory, default_conversion_rate=settings.default_conversion_rate)


def get_sweep_orchestrator(
    session_factory: SessionFactory = Depends(get_session_factory),
    delivery: NotificationDelivery = Depends(get_notification_delivery),
    calendar: MarketCalendar = Depends(get_market_calendar),
) -> SweepOrchestrator:
    return SweepOrchestrator(
        session_factory,
        delivery=delivery,
        calendar=calendar,
        claim_ttl_seconds=settings.sweep_claim_ttl_seconds,
    )


def get_callback_handler(session_factory: SessionFactory = Depends(get_session_factory)) -> BrokerCallbackHandler:
    return BrokerCallbackHandler(
        session_factory,
        signature_required=settings.broker_webhook_signature_required,
        confirmation_retry_budget=settings.broker_confirmation_retry_budget,
    )


def get_payment_settlement(
    session_factory: SessionFactory = Depends(get_session_factory),
    delivery: NotificationDelivery = Depends(get_notification_delivery),
) -> PaymentSettlement:
    return PaymentSettlement(
        session_factory,
        delivery=delivery,
        notify_merchants=settings.merchant_settlement_notifications_enabled,
    )


def get_bank_transfer_service(
    session_factory: SessionFactory = Depends(get_session_factory),
    http_client: httpx.AsyncClient | None = Depends(get_http_client),
) -> BankTransferService:
    client = HttpBankTransferClient(
        settings.bank_transfer_url,
        api_key=settings.bank_transfer_api_key,
        http_client=http_client,
        timeout_seconds=settings.bank_transfer_timeout_seconds,
    )
    return BankTransferService(session_factory, client=client)


def get_order_service(session_factory: SessionFactory = Depends(get_session_factory)) -> OrderService:
    return OrderService(session_factory, confirmation_retry_budget=settings.broker_confirmation_retry_budget)


def get_lineage_tracer(session_factory: SessionFactory = Depends(get_session_factory)) -> LineageTracer:
    return LineageTracer(session_factory)
