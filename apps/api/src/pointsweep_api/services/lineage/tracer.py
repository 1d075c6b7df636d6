"""Reconstruct the end-to-end chain behind any pipeline identifier.

The walk is read-only: PrepareBatch -> PreparedOrder -> Order -> SweepRun ->
Notification -> BrokerEventReceipt -> paid batch. Hops without a foreign key
are resolved through identifiers stored when the row was written
(``correlation_id`` and ``external_reference`` on notifications, the exec
reference on callback receipts). An absent hop is reported in ``missing``;
it never fails the trace.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable

from loguru import logger
from sqlalchemy import distinct, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pointsweep_api.core.errors import ValidationError, require
from pointsweep_api.db.session import SessionFactory
from pointsweep_api.models.bank_transfer import BankTransfer
from pointsweep_api.models.broker_event import BrokerEventReceipt
from pointsweep_api.models.notification import Notification, NotificationTargetTypeEnum
from pointsweep_api.models.order import Order
from pointsweep_api.models.prepare_batch import PrepareBatch, PreparedOrder
from pointsweep_api.models.sweep_run import SweepRun
from pointsweep_api.services.notifications.delivery import decode_payload
from pointsweep_api.services.orders.repository import OrderRepository

LINEAGE_TYPES = (
    "basket",
    "order",
    "prepare-batch",
    "sweep-batch",
    "broker-reference",
    "exec-reference",
    "ach-batch",
)

_TYPE_ALIASES = {
    "batch": "prepare-batch",
    "prep": "prepare-batch",
    "sweep": "sweep-batch",
    "broker": "broker-reference",
    "exec": "exec-reference",
    "ach": "ach-batch",
}

STAGES = (
    "prepare_batch",
    "staged",
    "basket",
    "order",
    "sweep",
    "broker_notification",
    "execution",
    "payment",
)


def _float(value: Any) -> float | None:
    return float(Decimal(str(value))) if value is not None else None


def _iso(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return value.isoformat()


def _order_view(order: Order) -> dict[str, Any]:
    return {
        "order_id": order.id,
        "member_id": order.member_id,
        "merchant_id": order.merchant_id,
        "basket_id": order.basket_id,
        "batch_id": order.batch_id,
        "symbol": order.symbol,
        "amount": _float(order.amount),
        "points_used": order.points_used,
        "status": order.status.value,
        "broker": order.broker,
        "broker_reference": order.broker_reference,
        "sweep_run_id": order.sweep_run_id,
        "executed_price": _float(order.executed_price),
        "executed_shares": _float(order.executed_shares),
        "executed_amount": _float(order.executed_amount),
        "paid_flag": bool(order.paid_flag),
        "paid_batch_id": order.paid_batch_id,
        "created_at": _iso(order.created_at),
    }


def _notification_view(notification: Notification) -> dict[str, Any]:
    return {
        "notification_id": notification.id,
        "target_type": notification.target_type.value,
        "target_name": notification.target_name,
        "event_type": notification.event_type,
        "status": notification.status.value,
        "correlation_id": notification.correlation_id,
        "external_reference": notification.external_reference,
        "response_code": notification.response_code,
        "error_message": notification.error_message,
        "basket_id": notification.basket_id,
        "created_at": _iso(notification.created_at),
        "sent_at": _iso(notification.sent_at),
    }


@dataclass(slots=True)
class Lineage:
    origin: dict[str, str]
    prepare_batches: list[dict[str, Any]] = field(default_factory=list)
    staged: list[dict[str, Any]] = field(default_factory=list)
    baskets: list[dict[str, Any]] = field(default_factory=list)
    orders: list[dict[str, Any]] = field(default_factory=list)
    sweep_runs: list[dict[str, Any]] = field(default_factory=list)
    notifications: list[dict[str, Any]] = field(default_factory=list)
    executions: list[dict[str, Any]] = field(default_factory=list)
    payments: list[dict[str, Any]] = field(default_factory=list)

    def _present(self) -> dict[str, bool]:
        return {
            "prepare_batch": bool(self.prepare_batches),
            "staged": any(rollup["lines"] for rollup in self.staged),
            "basket": bool(self.baskets),
            "order": bool(self.orders),
            "sweep": bool(self.sweep_runs),
            "broker_notification": any(item["target_type"] == "broker" for item in self.notifications),
            "execution": bool(self.executions),
            "payment": bool(self.payments),
        }

    @property
    def missing(self) -> list[str]:
        present = self._present()
        return [stage for stage in STAGES if not present[stage]]

    @property
    def chain(self) -> list[str]:
        present = self._present()
        chain: list[str] = []
        for stage in STAGES:
            if not present[stage]:
                break
            chain.append(stage)
        return chain

    def as_dict(self) -> dict[str, Any]:
        return {
            "origin": self.origin,
            "chain": self.chain,
            "missing": self.missing,
            "prepare_batches": self.prepare_batches,
            "staged": self.staged,
            "baskets": self.baskets,
            "orders": self.orders,
            "sweep_runs": self.sweep_runs,
            "notifications": self.notifications,
            "executions": self.executions,
            "payments": self.payments,
        }


class LineageTracer:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def trace(self, identifier: str, lineage_type: str) -> Lineage:
        identifier = require(identifier, "id")
        kind = str(require(lineage_type, "type")).lower()
        kind = _TYPE_ALIASES.get(kind, kind)
        if kind not in LINEAGE_TYPES:
            raise ValidationError(
                f"Unknown lineage type: {lineage_type}",
                details={"supported_types": list(LINEAGE_TYPES)},
            )

        lineage = Lineage(origin={"id": identifier, "type": kind})
        async with self._session_factory() as session:
            seed = await self._seed(session, kind, identifier)
            orders = await OrderRepository(session).by_ids(seed.order_ids) if seed.order_ids else []
            lineage.orders = [_order_view(order) for order in orders]

            batch_ids = {order.batch_id for order in orders if order.batch_id} | seed.batch_ids
            basket_ids = {order.basket_id for order in orders} | seed.basket_ids
            if not batch_ids and basket_ids:
                staged_batches = await session.execute(
                    select(distinct(PreparedOrder.batch_id)).where(PreparedOrder.basket_id.in_(sorted(basket_ids)))
                )
                batch_ids = set(staged_batches.scalars())

            scope = basket_ids if kind in ("basket", "order") else None
            for batch_id in sorted(batch_ids):
                await self._add_prepare_batch(session, lineage, batch_id, scope)

            lineage.baskets = self._baskets(orders, basket_ids)

            sweep_ids = {order.sweep_run_id for order in orders if order.sweep_run_id} | seed.sweep_ids
            notifications = await self._notifications(session, orders, basket_ids, sweep_ids, seed.references)
            sweep_ids |= {
                item.correlation_id
                for item in notifications
                if item.target_type == NotificationTargetTypeEnum.BROKER and item.correlation_id
            }
            lineage.notifications = [_notification_view(item) for item in notifications]
            lineage.sweep_runs = await self._sweep_runs(session, sweep_ids)
            lineage.executions = await self._executions(session, [order.id for order in orders])
            lineage.payments = await self._payments(
                session,
                {order.paid_batch_id for order in orders if order.paid_batch_id} | seed.paid_batch_ids,
            )

        logger.info(
            "Lineage traced",
            origin_type=kind,
            origin_id=identifier,
            orders=len(lineage.orders),
            missing=lineage.missing,
        )
        return lineage

    async def _seed(self, session: AsyncSession, kind: str, identifier: str) -> "_Seed":
        seed = _Seed()
        repository = OrderRepository(session)
        if kind == "order":
            try:
                order = await repository.get(int(identifier))
            except ValueError as exc:
                raise ValidationError("order id must be numeric") from exc
            if order is not None:
                seed.order_ids.add(order.id)
                seed.basket_ids.add(order.basket_id)
        elif kind == "basket":
            seed.basket_ids.add(identifier)
        elif kind == "prepare-batch":
            seed.batch_ids.add(identifier)
            seed.order_ids.update(
                (await session.execute(select(Order.id).where(Order.batch_id == identifier))).scalars()
            )
        elif kind == "sweep-batch":
            seed.sweep_ids.add(identifier)
            seed.order_ids.update(order.id for order in await repository.by_sweep_run(identifier))
            broker_notes = await session.execute(
                select(Notification).where(
                    Notification.correlation_id == identifier,
                    Notification.target_type == NotificationTargetTypeEnum.BROKER,
                )
            )
            for notification in broker_notes.scalars():
                seed.order_ids.update(_payload_order_ids(decode_payload(notification)))
        elif kind == "broker-reference":
            seed.references.add(identifier)
            seed.order_ids.update(order.id for order in await repository.by_broker_reference(identifier))
            receipts = await session.execute(
                select(BrokerEventReceipt.order_id).where(BrokerEventReceipt.broker_reference == identifier)
            )
            seed.order_ids.update(receipts.scalars())
            referenced = await session.execute(
                select(Notification).where(Notification.external_reference == identifier)
            )
            for notification in referenced.scalars():
                seed.order_ids.update(_payload_order_ids(decode_payload(notification)))
                if notification.correlation_id:
                    seed.sweep_ids.add(notification.correlation_id)
        elif kind == "exec-reference":
            receipts = await session.execute(
                select(BrokerEventReceipt.order_id).where(BrokerEventReceipt.exec_reference == identifier)
            )
            seed.order_ids.update(receipts.scalars())
        elif kind == "ach-batch":
            seed.paid_batch_ids.add(identifier)
            seed.order_ids.update(order.id for order in await repository.by_paid_batch(identifier))

        if seed.basket_ids and kind == "basket":
            seed.order_ids.update(order.id for order in await repository.by_baskets(seed.basket_ids))
        return seed

    async def _add_prepare_batch(
        self,
        session: AsyncSession,
        lineage: Lineage,
        batch_id: str,
        basket_ids: set[str] | None,
    ) -> None:
        batch = await session.get(PrepareBatch, batch_id)
        if batch is None:
            return
        lineage.prepare_batches.append(
            {
                "batch_id": batch.id,
                "status": batch.status.value,
                "total_members": batch.total_members,
                "total_orders": batch.total_orders,
                "total_amount": _float(batch.total_amount),
                "total_points": batch.total_points,
                "created_at": _iso(batch.created_at),
                "approved_at": _iso(batch.approved_at),
                "submitted_at": _iso(batch.submitted_at),
            }
        )
        stmt = select(
            func.count(PreparedOrder.id),
            func.count(distinct(PreparedOrder.member_id)),
            func.coalesce(func.sum(PreparedOrder.amount), 0),
            func.coalesce(func.sum(PreparedOrder.points_used), 0),
        ).where(PreparedOrder.batch_id == batch_id)
        if basket_ids:
            stmt = stmt.where(PreparedOrder.basket_id.in_(sorted(basket_ids)))
        lines, members, amount, points = (await session.execute(stmt)).one()
        lineage.staged.append(
            {
                "batch_id": batch_id,
                "lines": int(lines),
                "members": int(members),
                "amount": _float(amount),
                "points": int(points),
            }
        )

    @staticmethod
    def _baskets(orders: list[Order], basket_ids: set[str]) -> list[dict[str, Any]]:
        grouped: dict[str, list[Order]] = defaultdict(list)
        for order in orders:
            grouped[order.basket_id].append(order)
        baskets = []
        for basket_id in sorted(basket_ids):
            members = grouped.get(basket_id, [])
            if not members:
                continue
            baskets.append(
                {
                    "basket_id": basket_id,
                    "member_id": members[0].member_id,
                    "merchant_id": members[0].merchant_id,
                    "order_count": len(members),
                    "total_amount": round(sum(float(order.amount or 0) for order in members), 2),
                    "statuses": sorted({order.status.value for order in members}),
                }
            )
        return baskets

    async def _notifications(
        self,
        session: AsyncSession,
        orders: list[Order],
        basket_ids: set[str],
        sweep_ids: set[str],
        references: set[str],
    ) -> list[Notification]:
        correlations = set(sweep_ids) | {order.paid_batch_id for order in orders if order.paid_batch_id}
        clauses = []
        if correlations:
            clauses.append(Notification.correlation_id.in_(sorted(correlations)))
        if basket_ids:
            clauses.append(Notification.basket_id.in_(sorted(basket_ids)))
            # Group notifications carry several baskets and only list them in the payload.
            clauses.extend(Notification.payload.contains(f'"basket_id":"{basket}"') for basket in sorted(basket_ids))
        if references:
            clauses.append(Notification.external_reference.in_(sorted(references)))
        if not clauses:
            return []
        result = await session.execute(select(Notification).where(or_(*clauses)).order_by(Notification.id))
        return list(result.scalars().unique())

    async def _sweep_runs(self, session: AsyncSession, sweep_ids: set[str]) -> list[dict[str, Any]]:
        if not sweep_ids:
            return []
        result = await session.execute(select(SweepRun).where(SweepRun.id.in_(sorted(sweep_ids))).order_by(SweepRun.started_at))
        return [
            {
                "sweep_run_id": run.id,
                "batch_id": run.batch_id,
                "status": run.status.value,
                "started_at": _iso(run.started_at),
                "completed_at": _iso(run.completed_at),
                "merchants_processed": run.merchants_processed,
                "orders_processed": run.orders_processed,
                "orders_confirmed": run.orders_confirmed,
                "orders_failed": run.orders_failed,
                "brokers_notified": run.brokers_notified,
                "errors": run.errors,
            }
            for run in result.scalars()
        ]

    async def _executions(self, session: AsyncSession, order_ids: Iterable[int]) -> list[dict[str, Any]]:
        ids = sorted(set(order_ids))
        if not ids:
            return []
        result = await session.execute(
            select(BrokerEventReceipt).where(BrokerEventReceipt.order_id.in_(ids)).order_by(BrokerEventReceipt.id)
        )
        return [
            {
                "order_id": receipt.order_id,
                "event_type": receipt.event_type,
                "outcome": receipt.outcome,
                "broker": receipt.broker,
                "broker_reference": receipt.broker_reference,
                "exec_reference": receipt.exec_reference,
                "request_id": receipt.request_id,
                "received_at": _iso(receipt.received_at),
            }
            for receipt in result.scalars()
        ]

    async def _payments(self, session: AsyncSession, paid_batch_ids: set[str]) -> list[dict[str, Any]]:
        payments = []
        for paid_batch_id in sorted(paid_batch_ids):
            count, amount, paid_at = (
                await session.execute(
                    select(
                        func.count(Order.id),
                        func.coalesce(func.sum(Order.amount), 0),
                        func.min(Order.paid_at),
                    ).where(Order.paid_batch_id == paid_batch_id)
                )
            ).one()
            if not count:
                continue
            transfer = (
                await session.execute(select(BankTransfer).where(BankTransfer.idempotency_key == paid_batch_id))
            ).scalar_one_or_none()
            payments.append(
                {
                    "paid_batch_id": paid_batch_id,
                    "order_count": int(count),
                    "total_amount": _float(amount),
                    "paid_at": _iso(paid_at),
                    "transfer": {
                        "status": transfer.status.value,
                        "external_id": transfer.external_id,
                        "amount": _float(transfer.amount),
                    }
                    if transfer
                    else None,
                }
            )
        return payments


@dataclass(slots=True)
class _Seed:
    order_ids: set[int] = field(default_factory=set)
    basket_ids: set[str] = field(default_factory=set)
    batch_ids: set[str] = field(default_factory=set)
    sweep_ids: set[str] = field(default_factory=set)
    references: set[str] = field(default_factory=set)
    paid_batch_ids: set[str] = field(default_factory=set)


def _payload_order_ids(payload: dict[str, Any]) -> set[int]:
    ids: set[int] = set()
    for entry in payload.get("orders") or []:
        if isinstance(entry, dict):
            try:
                ids.add(int(entry.get("order_id")))
            except (TypeError, ValueError):
                continue
    return ids


__all__ = ["LINEAGE_TYPES", "Lineage", "LineageTracer", "STAGES"]
