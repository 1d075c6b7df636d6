"""Member and admin order operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from loguru import logger

from pointsweep_api.core.errors import ConcurrencyConflict, ValidationError, require
from pointsweep_api.db.session import SessionFactory, transaction
from pointsweep_api.models.order import Order, OrderStatusEnum
from pointsweep_api.models.order_state_event import OrderStateActorTypeEnum, OrderStateEvent
from pointsweep_api.services.orders.repository import OrderRepository
from pointsweep_api.services.orders.state_machine import (
    InvalidOrderTransitionError,
    OrderNotFoundError,
    OrderStateMachine,
)


@dataclass(slots=True)
class OrderDetail:
    order: Order
    history: list[OrderStateEvent]


@dataclass(slots=True)
class BulkTransitionResult:
    updated: list[int] = field(default_factory=list)
    skipped: list[dict[str, object]] = field(default_factory=list)


class OrderService:
    def __init__(self, session_factory: SessionFactory, *, confirmation_retry_budget: int | None = None) -> None:
        self._session_factory = session_factory
        self._retry_budget = confirmation_retry_budget

    async def get(self, order_id: int) -> OrderDetail:
        async with self._session_factory() as session:
            repository = OrderRepository(session)
            order = await repository.get(order_id)
            if order is None:
                raise OrderNotFoundError(f"Order {order_id} not found")
            return OrderDetail(order=order, history=await repository.history(order_id))

    async def cancel(self, order_id: int, *, actor_label: str | None = None) -> Order:
        """Cancel a pending or placed order and refund its wallet debit."""

        require(order_id, "order_id")
        async with transaction(self._session_factory, operation="cancel_order") as session:
            machine = OrderStateMachine(session, confirmation_retry_budget=self._retry_budget)
            order = await machine.get_order(order_id)
            if order.status not in (OrderStatusEnum.PENDING, OrderStatusEnum.PLACED):
                raise InvalidOrderTransitionError(order.status, OrderStatusEnum.CANCELLED, "only pending or placed orders can be cancelled")
            await machine.transition(
                order,
                OrderStatusEnum.CANCELLED,
                actor_type=OrderStateActorTypeEnum.ADMIN,
                actor_label=actor_label,
                notes="Cancelled on request",
            )
        logger.info("Order cancelled", order_id=order_id)
        return order

    async def mark_for_sale(self, order_ids: Iterable[int]) -> BulkTransitionResult:
        return await self._bulk_transition(order_ids, OrderStatusEnum.SETTLED, OrderStatusEnum.SELL)

    async def revert_sale(self, order_ids: Iterable[int]) -> BulkTransitionResult:
        return await self._bulk_transition(order_ids, OrderStatusEnum.SELL, OrderStatusEnum.SETTLED)

    async def _bulk_transition(
        self,
        order_ids: Iterable[int],
        source: OrderStatusEnum,
        target: OrderStatusEnum,
    ) -> BulkTransitionResult:
        ids = sorted({int(order_id) for order_id in order_ids})
        if not ids:
            raise ValidationError("order_ids is required")

        outcome = BulkTransitionResult()
        async with transaction(self._session_factory, operation=f"orders_{target.value}") as session:
            machine = OrderStateMachine(session)
            found = {order.id: order for order in await OrderRepository(session).by_ids(ids)}
            for order_id in ids:
                order = found.get(order_id)
                if order is None:
                    outcome.skipped.append({"order_id": order_id, "reason": "not_found"})
                    continue
                if order.status != source:
                    outcome.skipped.append({"order_id": order_id, "reason": f"status is {order.status.value}"})
                    continue
                try:
                    await machine.transition(order, target, actor_type=OrderStateActorTypeEnum.MEMBER)
                except ConcurrencyConflict as exc:
                    outcome.skipped.append({"order_id": order_id, "reason": f"status is {exc.details['status']}"})
                    continue
                outcome.updated.append(order_id)
        logger.info("Orders moved", target=target.value, updated=len(outcome.updated), skipped=len(outcome.skipped))
        return outcome


__all__ = ["BulkTransitionResult", "OrderDetail", "OrderService"]
