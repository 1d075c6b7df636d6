"""Stage redemption batches for admin review.

The preparer only writes ``prepare_batches`` and ``prepared_orders``. Live
orders are created later by the sweep orchestrator, and only for batches that
were approved here.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

from loguru import logger
from sqlalchemy import distinct, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pointsweep_api.core.errors import EligibilityError, NotFoundError, ValidationError, require
from pointsweep_api.db.session import SessionFactory, transaction
from pointsweep_api.models.counterparty import Merchant
from pointsweep_api.models.prepare_batch import PrepareBatch, PrepareBatchStatusEnum, PreparedOrder
from pointsweep_api.models.wallet import MemberStockPick, Wallet
from pointsweep_api.services.batches.allocation import (
    CENT,
    AllocationLine,
    PickWeight,
    allocate,
    effective_sweep_percentage,
    sweep_points,
)
from pointsweep_api.services.identifiers import timestamped_id
from pointsweep_api.services.orders.repository import OrderRepository
from pointsweep_api.services.wallets import WalletLedger, WalletSnapshot


def _money(value: Any) -> float:
    return float(Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP))


@dataclass(slots=True)
class MemberPlan:
    member_id: str
    merchant_id: str
    broker: str | None
    member_tier: str | None
    conversion_rate: Decimal
    sweep_percentage: int
    points: int
    amount: Decimal
    lines: list[AllocationLine]


@dataclass(slots=True)
class PlanResult:
    members: list[MemberPlan] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def total_orders(self) -> int:
        return sum(len(plan.lines) for plan in self.members)

    @property
    def total_amount(self) -> Decimal:
        return sum((line.amount for plan in self.members for line in plan.lines), Decimal(0))

    @property
    def total_points(self) -> int:
        return sum(line.points for plan in self.members for line in plan.lines)


@dataclass(slots=True)
class PrepareResult:
    batch: PrepareBatch
    skipped: dict[str, str]


class BatchPreparer:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        default_conversion_rate: float = 0.01,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._default_rate = Decimal(str(default_conversion_rate))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def preview_counts(self, merchant_id: str | None = None) -> dict[str, Any]:
        """Project what ``prepare`` would stage without writing anything."""

        async with self._session_factory() as session:
            plan = await self._plan(session, member_id=None, merchant_id=merchant_id)
            names = await self._merchant_names(session, {member.merchant_id for member in plan.members})

        by_merchant: dict[str, dict[str, Any]] = {}
        for member in plan.members:
            bucket = by_merchant.setdefault(
                member.merchant_id,
                {
                    "merchant_id": member.merchant_id,
                    "merchant_name": names.get(member.merchant_id) or member.merchant_id,
                    "members": 0,
                    "picks": 0,
                    "est_amount": Decimal(0),
                },
            )
            bucket["members"] += 1
            bucket["picks"] += len(member.lines)
            bucket["est_amount"] += sum((line.amount for line in member.lines), Decimal(0))

        merchants = sorted(by_merchant.values(), key=lambda item: item["members"], reverse=True)
        for bucket in merchants:
            bucket["est_amount"] = _money(bucket["est_amount"])
        return {
            "eligible_members": len(plan.members),
            "total_picks": plan.total_orders,
            "est_total_amount": _money(plan.total_amount),
            "est_total_points": plan.total_points,
            "members_skipped": len(plan.skipped),
            "by_merchant": merchants,
        }

    async def prepare(self, *, member_id: str | None = None, merchant_id: str | None = None) -> PrepareResult:
        """Stage one order line per eligible member pick in a new draft batch."""

        now = self._clock()
        batch_id = timestamped_id("PREP", now)
        logger.info("Prepare started", batch_id=batch_id, member_id=member_id, merchant_id=merchant_id)

        async with transaction(self._session_factory, operation="prepare_batch") as session:
            plan = await self._plan(session, member_id=member_id, merchant_id=merchant_id)
            batch = PrepareBatch(
                id=batch_id,
                status=PrepareBatchStatusEnum.DRAFT,
                filter_merchant=merchant_id,
                filter_member=member_id,
                total_members=len(plan.members),
                total_orders=plan.total_orders,
                total_amount=plan.total_amount,
                total_points=plan.total_points,
                members_skipped=len(plan.skipped),
                created_at=now,
            )
            session.add(batch)
            for member in plan.members:
                basket_id = f"{batch_id}-{member.member_id}"
                for line in member.lines:
                    session.add(
                        PreparedOrder(
                            batch_id=batch_id,
                            basket_id=basket_id,
                            member_id=member.member_id,
                            merchant_id=member.merchant_id,
                            symbol=line.symbol,
                            amount=line.amount,
                            price=None,
                            shares=Decimal(0),
                            points_used=line.points,
                            broker=member.broker,
                            member_tier=member.member_tier,
                            conversion_rate=member.conversion_rate,
                            sweep_percentage=member.sweep_percentage,
                            allocation_pct=line.allocation_pct,
                            created_at=now,
                        )
                    )

        logger.info(
            "Prepare finished",
            batch_id=batch_id,
            members=batch.total_members,
            orders=batch.total_orders,
            amount=str(batch.total_amount),
            skipped=batch.members_skipped,
        )
        return PrepareResult(batch=batch, skipped=plan.skipped)

    async def approve(self, batch_id: str) -> PrepareBatch:
        """Promote a draft batch to approved; this is the only path into the sweep."""

        return await self._move(batch_id, PrepareBatchStatusEnum.APPROVED, "approved_at")

    async def discard(self, batch_id: str) -> PrepareBatch:
        return await self._move(batch_id, PrepareBatchStatusEnum.DISCARDED, "discarded_at")

    async def get(self, batch_id: str) -> PrepareBatch:
        batch_id = require(batch_id, "batch_id")
        async with self._session_factory() as session:
            batch = await session.get(PrepareBatch, batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        return batch

    async def stats(self, batch_id: str) -> dict[str, Any]:
        batch_id = require(batch_id, "batch_id")
        async with self._session_factory() as session:
            batch = await session.get(PrepareBatch, batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")

            def _rollup(*columns):
                return (
                    select(
                        *columns,
                        func.count(distinct(PreparedOrder.member_id)).label("members"),
                        func.count(PreparedOrder.id).label("orders"),
                        func.coalesce(func.sum(PreparedOrder.amount), 0).label("total_amount"),
                        func.coalesce(func.sum(PreparedOrder.points_used), 0).label("total_points"),
                    )
                    .where(PreparedOrder.batch_id == batch_id)
                    .group_by(*columns)
                    .order_by(func.sum(PreparedOrder.amount).desc())
                )

            by_merchant = (await session.execute(_rollup(PreparedOrder.merchant_id))).mappings().all()
            by_broker = (await session.execute(_rollup(PreparedOrder.broker))).mappings().all()
            by_tier = (
                await session.execute(_rollup(PreparedOrder.member_tier, PreparedOrder.conversion_rate))
            ).mappings().all()
            by_symbol = (
                await session.execute(
                    select(
                        PreparedOrder.symbol,
                        func.count(PreparedOrder.id).label("order_count"),
                        func.coalesce(func.sum(PreparedOrder.amount), 0).label("total_amount"),
                        func.coalesce(func.sum(PreparedOrder.points_used), 0).label("total_points"),
                    )
                    .where(PreparedOrder.batch_id == batch_id)
                    .group_by(PreparedOrder.symbol)
                    .order_by(func.count(PreparedOrder.id).desc(), PreparedOrder.symbol)
                    .limit(20)
                )
            ).mappings().all()

        def _clean(rows) -> list[dict[str, Any]]:
            cleaned = []
            for row in rows:
                item = dict(row)
                item["total_amount"] = _money(item["total_amount"])
                item["total_points"] = int(item["total_points"] or 0)
                if "conversion_rate" in item and item["conversion_rate"] is not None:
                    item["conversion_rate"] = float(item["conversion_rate"])
                cleaned.append(item)
            return cleaned

        return {
            "batch": batch,
            "by_merchant": _clean(by_merchant),
            "by_broker": _clean(by_broker),
            "by_tier": _clean(by_tier),
            "by_symbol": _clean(by_symbol),
        }

    async def drilldown(
        self,
        batch_id: str,
        *,
        page: int = 1,
        per_page: int = 50,
        merchant_id: str | None = None,
        broker: str | None = None,
    ) -> dict[str, Any]:
        """Paginated per-member rollup of a batch."""

        batch_id = require(batch_id, "batch_id")
        if page < 1 or per_page < 1:
            raise ValidationError("page and per_page must be positive")

        filters = [PreparedOrder.batch_id == batch_id]
        if merchant_id:
            filters.append(PreparedOrder.merchant_id == merchant_id)
        if broker:
            filters.append(PreparedOrder.broker == broker)

        async with self._session_factory() as session:
            if await session.get(PrepareBatch, batch_id) is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            total_members = int(
                (
                    await session.execute(select(func.count(distinct(PreparedOrder.member_id))).where(*filters))
                ).scalar()
                or 0
            )
            rollup = (
                await session.execute(
                    select(
                        PreparedOrder.member_id,
                        PreparedOrder.basket_id,
                        PreparedOrder.merchant_id,
                        PreparedOrder.broker,
                        PreparedOrder.member_tier,
                        PreparedOrder.conversion_rate,
                        PreparedOrder.sweep_percentage,
                        func.count(PreparedOrder.id).label("order_count"),
                        func.sum(PreparedOrder.amount).label("total_amount"),
                        func.sum(PreparedOrder.points_used).label("total_points"),
                    )
                    .where(*filters)
                    .group_by(
                        PreparedOrder.member_id,
                        PreparedOrder.basket_id,
                        PreparedOrder.merchant_id,
                        PreparedOrder.broker,
                        PreparedOrder.member_tier,
                        PreparedOrder.conversion_rate,
                        PreparedOrder.sweep_percentage,
                    )
                    .order_by(func.sum(PreparedOrder.amount).desc(), PreparedOrder.member_id)
                    .limit(per_page)
                    .offset((page - 1) * per_page)
                )
            ).mappings().all()

            members = [row["member_id"] for row in rollup]
            symbols: dict[str, list[str]] = defaultdict(list)
            if members:
                symbol_rows = await session.execute(
                    select(PreparedOrder.member_id, PreparedOrder.symbol)
                    .where(*filters, PreparedOrder.member_id.in_(members))
                    .order_by(PreparedOrder.symbol)
                )
                for member, symbol in symbol_rows:
                    if symbol not in symbols[member]:
                        symbols[member].append(symbol)

        return {
            "members": [
                {
                    **dict(row),
                    "conversion_rate": float(row["conversion_rate"]),
                    "total_amount": _money(row["total_amount"]),
                    "total_points": int(row["total_points"] or 0),
                    "symbols": symbols.get(row["member_id"], []),
                }
                for row in rollup
            ],
            "total_members": total_members,
            "page": page,
            "per_page": per_page,
            "total_pages": math.ceil(total_members / per_page) if total_members else 0,
        }

    async def batches(self, limit: int = 50) -> list[PrepareBatch]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PrepareBatch).order_by(PrepareBatch.created_at.desc(), PrepareBatch.id.desc()).limit(max(limit, 1))
            )
            return list(result.scalars())

    async def _move(self, batch_id: str, target: PrepareBatchStatusEnum, stamp: str) -> PrepareBatch:
        batch_id = require(batch_id, "batch_id")
        now = self._clock()
        async with transaction(self._session_factory, operation=f"batch_{target.value}") as session:
            result = await session.execute(
                update(PrepareBatch)
                .where(PrepareBatch.id == batch_id, PrepareBatch.status == PrepareBatchStatusEnum.DRAFT)
                .values(status=target, **{stamp: now})
                .execution_options(synchronize_session=False)
            )
            batch = await session.get(PrepareBatch, batch_id, populate_existing=True)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            if result.rowcount != 1:
                raise EligibilityError(
                    f"Batch {batch_id} is {batch.status.value}; only draft batches can be {target.value}",
                    details={"batch_id": batch_id, "status": batch.status.value},
                )
        logger.info("Batch status changed", batch_id=batch_id, status=target.value)
        return batch

    async def _merchant_names(self, session: AsyncSession, merchant_ids: set[str]) -> dict[str, str | None]:
        if not merchant_ids:
            return {}
        result = await session.execute(
            select(Merchant.merchant_id, Merchant.merchant_name).where(Merchant.merchant_id.in_(sorted(merchant_ids)))
        )
        return {merchant: name for merchant, name in result}

    async def _plan(self, session: AsyncSession, *, member_id: str | None, merchant_id: str | None) -> PlanResult:
        stmt = (
            select(MemberStockPick)
            .join(Wallet, Wallet.member_id == MemberStockPick.member_id)
            .where(MemberStockPick.is_active.is_(True))
            .order_by(MemberStockPick.member_id, MemberStockPick.id)
        )
        if member_id:
            stmt = stmt.where(MemberStockPick.member_id == member_id)
        if merchant_id:
            stmt = stmt.where(Wallet.merchant_id == merchant_id)

        picks: dict[str, list[PickWeight]] = defaultdict(list)
        for pick in (await session.execute(stmt)).scalars():
            picks[pick.member_id].append(
                PickWeight(
                    symbol=pick.symbol,
                    allocation_pct=Decimal(str(pick.allocation_pct)) if pick.allocation_pct is not None else None,
                )
            )
        wallets = await WalletLedger(session).read_many(picks.keys())

        merchant_rates: dict[str, Decimal] = {}
        merchant_ids = sorted({wallet.merchant_id for wallet in wallets.values()})
        if merchant_ids:
            rows = await session.execute(
                select(Merchant.merchant_id, Merchant.conversion_rate).where(Merchant.merchant_id.in_(merchant_ids))
            )
            merchant_rates = {
                merchant: Decimal(str(rate)) for merchant, rate in rows if rate is not None and Decimal(str(rate)) > 0
            }

        busy = await OrderRepository(session).members_with_open_orders(wallets.keys())
        outcome = PlanResult()
        for member in picks:
            wallet = wallets[member]
            reason = self._ineligible_reason(wallet, busy)
            if reason:
                outcome.skipped[member] = reason
                continue

            rate = self._conversion_rate(wallet, merchant_rates)
            points = sweep_points(wallet.points, wallet.sweep_percentage)
            amount = min(
                (Decimal(points) * rate).quantize(CENT, rounding=ROUND_HALF_UP),
                wallet.cash_balance.quantize(CENT, rounding=ROUND_HALF_UP),
            )
            if points <= 0 or amount <= 0:
                outcome.skipped[member] = "nothing_to_sweep"
                continue

            lines = [line for line in allocate(picks[member], points=points, amount=amount) if line.amount > 0]
            if not lines:
                outcome.skipped[member] = "nothing_to_sweep"
                continue
            outcome.members.append(
                MemberPlan(
                    member_id=member,
                    merchant_id=wallet.merchant_id,
                    broker=wallet.broker,
                    member_tier=wallet.member_tier,
                    conversion_rate=rate,
                    sweep_percentage=effective_sweep_percentage(wallet.sweep_percentage),
                    points=points,
                    amount=amount,
                    lines=lines,
                )
            )
        return outcome

    def _conversion_rate(self, wallet: WalletSnapshot, merchant_rates: dict[str, Decimal]) -> Decimal:
        if wallet.conversion_rate is not None and wallet.conversion_rate > 0:
            return wallet.conversion_rate
        return merchant_rates.get(wallet.merchant_id, self._default_rate)

    @staticmethod
    def _ineligible_reason(wallet: WalletSnapshot, busy: set[str]) -> str | None:
        if not wallet.sweep_enrolled:
            return "not_enrolled"
        if not wallet.is_active:
            return "wallet_inactive"
        if wallet.cash_balance <= 0:
            return "no_cash_balance"
        if wallet.points <= 0:
            return "no_points"
        if wallet.member_id in busy:
            return "open_order"
        return None


__all__ = ["BatchPreparer", "MemberPlan", "PlanResult", "PrepareResult"]
