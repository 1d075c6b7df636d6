"""Typed lookups over the order store."""

from __future__ import annotations

from typing import Iterable, Sequence

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from pointsweep_api.models.order import Order, OrderStatusEnum
from pointsweep_api.models.order_state_event import OrderStateEvent


class OrderRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, order_id: int) -> Order | None:
        return await self._session.get(Order, order_id)

    async def by_ids(self, order_ids: Iterable[int]) -> list[Order]:
        ids = sorted({int(order_id) for order_id in order_ids})
        if not ids:
            return []
        result = await self._session.execute(select(Order).where(Order.id.in_(ids)).order_by(Order.id))
        return list(result.scalars())

    async def by_basket(self, basket_id: str) -> list[Order]:
        result = await self._session.execute(select(Order).where(Order.basket_id == basket_id).order_by(Order.id))
        return list(result.scalars())

    async def by_baskets(self, basket_ids: Iterable[str]) -> list[Order]:
        baskets = sorted(set(basket_ids))
        if not baskets:
            return []
        result = await self._session.execute(select(Order).where(Order.basket_id.in_(baskets)).order_by(Order.id))
        return list(result.scalars())

    async def by_batch(
        self,
        batch_id: str,
        *,
        statuses: Sequence[OrderStatusEnum] | None = None,
        merchant_id: str | None = None,
    ) -> list[Order]:
        stmt = select(Order).where(Order.batch_id == batch_id)
        if statuses:
            stmt = stmt.where(Order.status.in_(tuple(statuses)))
        if merchant_id:
            stmt = stmt.where(Order.merchant_id == merchant_id)
        result = await self._session.execute(stmt.order_by(Order.merchant_id, Order.broker, Order.id))
        return list(result.scalars())

    async def by_broker_reference(self, reference: str) -> list[Order]:
        result = await self._session.execute(select(Order).where(Order.broker_reference == reference).order_by(Order.id))
        return list(result.scalars())

    async def by_sweep_run(self, sweep_run_id: str) -> list[Order]:
        result = await self._session.execute(select(Order).where(Order.sweep_run_id == sweep_run_id).order_by(Order.id))
        return list(result.scalars())

    async def by_paid_batch(self, paid_batch_id: str) -> list[Order]:
        result = await self._session.execute(
            select(Order).where(Order.paid_batch_id == paid_batch_id).order_by(Order.id)
        )
        return list(result.scalars())

    async def has_open_order(self, member_id: str) -> bool:
        """Members with a pending or placed order are not prepared again."""

        stmt = select(
            exists().where(
                Order.member_id == member_id,
                Order.status.in_((OrderStatusEnum.PENDING, OrderStatusEnum.PLACED)),
            )
        )
        return bool((await self._session.execute(stmt)).scalar())

    async def members_with_open_orders(self, member_ids: Iterable[str]) -> set[str]:
        members = sorted(set(member_ids))
        if not members:
            return set()
        stmt = select(Order.member_id).where(
            Order.member_id.in_(members),
            Order.status.in_((OrderStatusEnum.PENDING, OrderStatusEnum.PLACED)),
        )
        return set((await self._session.execute(stmt)).scalars())

    async def promoted_prepared_ids(self, prepared_ids: Iterable[int]) -> set[int]:
        ids = sorted(set(prepared_ids))
        if not ids:
            return set()
        stmt = select(Order.prepared_order_id).where(Order.prepared_order_id.in_(ids))
        return set((await self._session.execute(stmt)).scalars())

    async def history(self, order_id: int) -> list[OrderStateEvent]:
        """Return chronological order state events."""

        stmt = select(OrderStateEvent).where(OrderStateEvent.order_id == order_id).order_by(OrderStateEvent.id)
        result = await self._session.execute(stmt)
        return list(result.scalars())


__all__ = ["OrderRepository"]
