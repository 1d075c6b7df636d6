"""Flag confirmed orders as paid to the merchant, exactly once."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from loguru import logger
from sqlalchemy import func, select

from pointsweep_api.core.errors import PipelineError, require
from pointsweep_api.db.session import SessionFactory, transaction
from pointsweep_api.models.order import Order
from pointsweep_api.observability.tracing import pipeline_span
from pointsweep_api.services.identifiers import paid_batch_id as build_paid_batch_id
from pointsweep_api.services.notifications.delivery import DeliveryResult, NotificationDelivery
from pointsweep_api.services.notifications.targets import TargetDirectory
from pointsweep_api.services.orders.state_machine import OrderStateMachine

SETTLED_EVENT = "payments.settled"


@dataclass(slots=True)
class SettlementResult:
    merchant_id: str
    paid_batch_id: str
    affected: int
    order_ids: list[int] = field(default_factory=list)
    total_amount: float = 0.0
    notification: DeliveryResult | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "merchant_id": self.merchant_id,
            "paid_batch_id": self.paid_batch_id,
            "affected": self.affected,
            "order_ids": self.order_ids,
            "total_amount": self.total_amount,
            "notification": self.notification.as_dict() if self.notification else None,
        }


class PaymentSettlement:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        delivery: NotificationDelivery | None = None,
        notify_merchants: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._delivery = delivery
        self._notify_merchants = notify_merchants and delivery is not None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def mark_paid(self, merchant_id: str, paid_batch_id: str | None = None) -> SettlementResult:
        """Settle every unpaid confirmed or executed order of the merchant; a rerun affects nothing."""

        merchant_id = require(merchant_id, "merchant_id")
        now = self._clock()
        batch_id = (paid_batch_id or "").strip() or build_paid_batch_id(merchant_id, now)

        with pipeline_span("settlement.mark_paid", merchant_id=merchant_id, paid_batch_id=batch_id) as span:
            async with transaction(self._session_factory, operation="mark_paid") as session:
                order_ids = await OrderStateMachine(session, clock=lambda: now).settle_unpaid(
                    merchant_id,
                    paid_batch_id=batch_id,
                )
                total = Decimal(0)
                if order_ids:
                    total = Decimal(
                        str(
                            await session.scalar(
                                select(func.coalesce(func.sum(Order.amount), 0)).where(Order.id.in_(order_ids))
                            )
                        )
                    )
            span.set_attribute("pointsweep.affected", len(order_ids))

        result = SettlementResult(
            merchant_id=merchant_id,
            paid_batch_id=batch_id,
            affected=len(order_ids),
            order_ids=sorted(order_ids),
            total_amount=float(total.quantize(Decimal("0.01"))),
        )
        logger.info(
            "Merchant orders marked paid",
            merchant_id=merchant_id,
            paid_batch_id=batch_id,
            affected=result.affected,
            total_amount=result.total_amount,
        )
        if result.affected and self._notify_merchants:
            result.notification = await self._notify(result, now)
        return result

    async def payable_summary(self, merchant_id: str | None = None) -> dict[str, Any]:
        """Unpaid confirmed/executed totals by merchant and broker."""

        stmt = select(
            Order.merchant_id,
            Order.broker,
            func.count(Order.id),
            func.coalesce(func.sum(Order.amount), 0),
            func.coalesce(func.sum(Order.points_used), 0),
        ).where(
            Order.status.in_(tuple(OrderStateMachine.PAYABLE_STATUSES)),
            Order.paid_flag.is_(False),
        )
        if merchant_id:
            stmt = stmt.where(Order.merchant_id == merchant_id)
        stmt = stmt.group_by(Order.merchant_id, Order.broker).order_by(Order.merchant_id, Order.broker)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()

        merchants: dict[str, dict[str, Any]] = {}
        for merchant, broker, count, amount, points in rows:
            bucket = merchants.setdefault(
                merchant,
                {"merchant_id": merchant, "orders": 0, "amount": Decimal(0), "points": 0, "brokers": []},
            )
            bucket["orders"] += int(count)
            bucket["amount"] += Decimal(str(amount))
            bucket["points"] += int(points)
            bucket["brokers"].append(
                {
                    "broker": broker,
                    "orders": int(count),
                    "amount": float(Decimal(str(amount)).quantize(Decimal("0.01"))),
                }
            )
        summary = list(merchants.values())
        for bucket in summary:
            bucket["amount"] = float(bucket["amount"].quantize(Decimal("0.01")))
        return {
            "merchants": summary,
            "total_orders": sum(bucket["orders"] for bucket in summary),
            "total_amount": round(sum(bucket["amount"] for bucket in summary), 2),
        }

    async def _notify(self, result: SettlementResult, now: datetime) -> DeliveryResult | None:
        async with self._session_factory() as session:
            target = await TargetDirectory(session).merchant(result.merchant_id)
        payload = {
            "event_type": SETTLED_EVENT,
            "merchant_id": result.merchant_id,
            "paid_batch_id": result.paid_batch_id,
            "order_ids": result.order_ids,
            "orders_paid": result.affected,
            "total_amount": result.total_amount,
            "timestamp": now.isoformat(),
        }
        try:
            delivery = await self._delivery.send(
                target,
                SETTLED_EVENT,
                payload,
                correlation_id=result.paid_batch_id,
                merchant_id=result.merchant_id,
            )
        except PipelineError as exc:
            logger.error(
                "Settlement notification could not be recorded",
                merchant_id=result.merchant_id,
                paid_batch_id=result.paid_batch_id,
                error=exc.message,
            )
            return None
        if not delivery.success:
            logger.warning(
                "Settlement notification not delivered",
                merchant_id=result.merchant_id,
                paid_batch_id=result.paid_batch_id,
                error=delivery.error,
            )
        return delivery


__all__ = ["PaymentSettlement", "SETTLED_EVENT", "SettlementResult"]
