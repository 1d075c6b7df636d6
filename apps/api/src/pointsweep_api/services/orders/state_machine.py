"""Order state machine orchestration and audit logging."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pointsweep_api.core.errors import ConcurrencyConflict, EligibilityError, NotFoundError
from pointsweep_api.models.order import Order, OrderStatusEnum
from pointsweep_api.models.order_state_event import OrderStateActorTypeEnum, OrderStateEvent
from pointsweep_api.services.wallets import WalletLedger


class InvalidOrderTransitionError(EligibilityError):
    """Raised when a state transition violates the configured state machine."""

    def __init__(self, current_status: OrderStatusEnum, requested_status: OrderStatusEnum, reason: str | None = None) -> None:
        message = f"Cannot transition order from {current_status.value} to {requested_status.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"from": current_status.value, "to": requested_status.value})
        self.current_status = current_status
        self.requested_status = requested_status


class OrderNotFoundError(NotFoundError):
    """Raised when attempting to mutate a missing order."""


@dataclass(slots=True, frozen=True)
class FillData:
    """Execution details a broker reports for a filled order."""

    price: Decimal
    shares: Decimal
    amount: Decimal


class OrderStateMachine:
    """Owns the transition table; every status change goes through here.

    Callers own the transaction. Each transition writes an ``OrderStateEvent``,
    stamps the matching timestamp column and, when a funded order is cancelled
    or failed, returns the debited points and cash to the member wallet.
    """

    _ALLOWED_TRANSITIONS: dict[OrderStatusEnum, set[OrderStatusEnum]] = {
        OrderStatusEnum.PENDING: {
            OrderStatusEnum.QUEUED,
            OrderStatusEnum.PLACED,
            OrderStatusEnum.CANCELLED,
            OrderStatusEnum.FAILED,
        },
        OrderStatusEnum.QUEUED: {
            OrderStatusEnum.PENDING,
            OrderStatusEnum.PLACED,
            OrderStatusEnum.FAILED,
        },
        OrderStatusEnum.PLACED: {
            OrderStatusEnum.CONFIRMED,
            OrderStatusEnum.EXECUTED,
            OrderStatusEnum.CANCELLED,
            OrderStatusEnum.FAILED,
        },
        OrderStatusEnum.CONFIRMED: {
            OrderStatusEnum.EXECUTED,
            OrderStatusEnum.SETTLED,
        },
        OrderStatusEnum.EXECUTED: {
            OrderStatusEnum.SETTLED,
        },
        OrderStatusEnum.SETTLED: {
            OrderStatusEnum.SELL,
        },
        OrderStatusEnum.SELL: {
            OrderStatusEnum.SOLD,
            OrderStatusEnum.SETTLED,
        },
        OrderStatusEnum.SOLD: set(),
        OrderStatusEnum.CANCELLED: set(),
        OrderStatusEnum.FAILED: set(),
    }

    # Forward progress order used to decide whether an event is already applied.
    _RANK: dict[OrderStatusEnum, int] = {
        OrderStatusEnum.PENDING: 0,
        OrderStatusEnum.QUEUED: 1,
        OrderStatusEnum.PLACED: 2,
        OrderStatusEnum.CONFIRMED: 3,
        OrderStatusEnum.EXECUTED: 4,
        OrderStatusEnum.SETTLED: 5,
        OrderStatusEnum.SELL: 6,
        OrderStatusEnum.SOLD: 7,
    }

    FUNDED_STATUSES = frozenset({OrderStatusEnum.PENDING, OrderStatusEnum.QUEUED, OrderStatusEnum.PLACED})
    FILL_REQUIRED = frozenset({OrderStatusEnum.CONFIRMED, OrderStatusEnum.EXECUTED})
    PAYABLE_STATUSES = frozenset({OrderStatusEnum.CONFIRMED, OrderStatusEnum.EXECUTED})
    TERMINAL_STATUSES = frozenset({OrderStatusEnum.SOLD, OrderStatusEnum.CANCELLED, OrderStatusEnum.FAILED})

    _TIMESTAMP_COLUMNS: dict[OrderStatusEnum, str] = {
        OrderStatusEnum.QUEUED: "queued_at",
        OrderStatusEnum.PLACED: "placed_at",
        OrderStatusEnum.CONFIRMED: "confirmed_at",
        OrderStatusEnum.EXECUTED: "executed_at",
        OrderStatusEnum.SETTLED: "settled_at",
        OrderStatusEnum.CANCELLED: "cancelled_at",
        OrderStatusEnum.FAILED: "failed_at",
        OrderStatusEnum.SOLD: "sold_at",
    }

    def __init__(
        self,
        session: AsyncSession,
        *,
        confirmation_retry_budget: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._wallets = WalletLedger(session)
        self._retry_budget = confirmation_retry_budget
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def can_transition(cls, current: OrderStatusEnum, target: OrderStatusEnum) -> bool:
        return target in cls._ALLOWED_TRANSITIONS.get(current, set())

    @classmethod
    def has_reached(cls, current: OrderStatusEnum, target: OrderStatusEnum) -> bool:
        """True when ``current`` is the target or already further along the forward path."""

        if current == target:
            return True
        if current in cls._RANK and target in cls._RANK:
            return cls._RANK[current] >= cls._RANK[target]
        return False

    async def get_order(self, order_id: int) -> Order:
        order = await self._session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def transition(
        self,
        order: Order,
        target_status: OrderStatusEnum,
        *,
        actor_type: OrderStateActorTypeEnum = OrderStateActorTypeEnum.SYSTEM,
        actor_label: str | None = None,
        notes: str | None = None,
        metadata: dict | None = None,
        fill: FillData | None = None,
    ) -> OrderStateEvent:
        """Transition an order to a new status if allowed by the state machine."""

        current_status = order.status
        if target_status == current_status or not self.can_transition(current_status, target_status):
            raise InvalidOrderTransitionError(current_status, target_status)
        if target_status == OrderStatusEnum.SETTLED and current_status in self.PAYABLE_STATUSES:
            raise InvalidOrderTransitionError(current_status, target_status, "settlement runs through payment settlement")
        if target_status in self.FILL_REQUIRED and fill is None:
            raise InvalidOrderTransitionError(current_status, target_status, "executed price, shares and amount are required")

        now = self._clock()
        await self._claim_status(order, current_status, target_status, now)
        if fill is not None and target_status in self.FILL_REQUIRED:
            order.executed_price = fill.price
            order.executed_shares = fill.shares
            order.executed_amount = fill.amount

        column = self._TIMESTAMP_COLUMNS.get(target_status)
        if column:
            setattr(order, column, now)
        order.status = target_status
        order.updated_at = now
        if target_status == OrderStatusEnum.FAILED and notes:
            order.failure_reason = notes

        if current_status in self.FUNDED_STATUSES and target_status in (OrderStatusEnum.CANCELLED, OrderStatusEnum.FAILED):
            await self._refund(order)

        event = OrderStateEvent(
            order_id=order.id,
            from_status=current_status.value,
            to_status=target_status.value,
            actor_type=actor_type,
            actor_label=actor_label,
            notes=notes,
            metadata_json=metadata or {},
        )
        self._session.add(event)
        await self._session.flush()
        logger.info(
            "Order status transitioned",
            order_id=order.id,
            from_status=current_status.value,
            to_status=target_status.value,
            actor_type=actor_type.value,
        )
        return event

    async def record_unfilled_confirmation(
        self,
        order: Order,
        *,
        actor_label: str | None = None,
        metadata: dict | None = None,
    ) -> OrderStatusEnum:
        """Hold a placed order that was confirmed without fill data; escalate once the budget is spent."""

        if order.status != OrderStatusEnum.PLACED:
            raise InvalidOrderTransitionError(order.status, OrderStatusEnum.CONFIRMED, "order is not placed")
        await self._claim_status(order, OrderStatusEnum.PLACED, OrderStatusEnum.PLACED, self._clock())
        order.confirmation_attempts = (order.confirmation_attempts or 0) + 1
        if self._retry_budget is not None and order.confirmation_attempts >= self._retry_budget:
            await self.transition(
                order,
                OrderStatusEnum.FAILED,
                actor_type=OrderStateActorTypeEnum.BROKER,
                actor_label=actor_label,
                notes=f"No fill data after {order.confirmation_attempts} confirmations",
                metadata=metadata,
            )
            return OrderStatusEnum.FAILED

        await self._session.flush()
        logger.warning(
            "Order confirmation missing fill data",
            order_id=order.id,
            attempts=order.confirmation_attempts,
            budget=self._retry_budget,
        )
        return OrderStatusEnum.PLACED

    async def settle_unpaid(self, merchant_id: str, *, paid_batch_id: str) -> list[int]:
        """Flag every unpaid confirmed/executed order of the merchant as paid and settled in one UPDATE."""

        now = self._clock()
        stmt = (
            update(Order)
            .where(
                Order.merchant_id == merchant_id,
                Order.status.in_(tuple(self.PAYABLE_STATUSES)),
                Order.paid_flag.is_(False),
            )
            .values(
                paid_flag=True,
                paid_batch_id=paid_batch_id,
                paid_at=now,
                status=OrderStatusEnum.SETTLED,
                settled_at=now,
                updated_at=now,
            )
            .returning(Order.id, Order.executed_at)
            .execution_options(synchronize_session=False)
        )
        rows = (await self._session.execute(stmt)).all()
        for order_id, executed_at in rows:
            previous = OrderStatusEnum.EXECUTED if executed_at is not None else OrderStatusEnum.CONFIRMED
            self._session.add(
                OrderStateEvent(
                    order_id=order_id,
                    from_status=previous.value,
                    to_status=OrderStatusEnum.SETTLED.value,
                    actor_type=OrderStateActorTypeEnum.SETTLEMENT,
                    actor_label=paid_batch_id,
                    metadata_json={"paid_batch_id": paid_batch_id},
                )
            )
        await self._session.flush()
        return [order_id for order_id, _ in rows]

    async def _claim_status(
        self,
        order: Order,
        expected: OrderStatusEnum,
        target: OrderStatusEnum,
        now: datetime,
    ) -> None:
        """Compare-and-set on the stored status; a row that moved on since it was read is a conflict."""

        result = await self._session.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected)
            .values(status=target, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        stored = await self._session.scalar(select(Order.status).where(Order.id == order.id))
        stored_value = getattr(stored, "value", stored)
        logger.warning(
            "Order changed since it was read",
            order_id=order.id,
            expected=expected.value,
            stored=stored_value,
            requested=target.value,
        )
        raise ConcurrencyConflict(
            f"Order {order.id} is no longer {expected.value}",
            details={"order_id": order.id, "expected": expected.value, "status": stored_value},
        )

    async def _refund(self, order: Order) -> None:
        points = int(order.points_used or 0)
        amount = Decimal(str(order.amount or 0))
        if points == 0 and amount == 0:
            return
        await self._wallets.apply(order.member_id, points_delta=points, cash_delta=amount)
        logger.info("Order refunded to wallet", order_id=order.id, member_id=order.member_id, points=points, amount=str(amount))


__all__ = [
    "FillData",
    "InvalidOrderTransitionError",
    "OrderNotFoundError",
    "OrderStateMachine",
]
