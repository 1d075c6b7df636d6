"""Turn approved batches into live broker orders.

A sweep walks every approved batch: it claims the batch, promotes the staged
lines into ``orders`` (debiting wallets in the same transaction), then sends
one ``order.placed`` notification per merchant and broker. Delivery happens
with no transaction open; a failed group leaves its orders pending for
``retry_failed``.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable

from loguru import logger
from sqlalchemy import func, or_, select, update

from pointsweep_api.core.errors import ConcurrencyConflict, EligibilityError, NotFoundError, PersistenceError, require
from pointsweep_api.db.session import SessionFactory, transaction
from pointsweep_api.models.order import Order, OrderStatusEnum, OrderTypeEnum
from pointsweep_api.models.order_state_event import OrderStateActorTypeEnum, OrderStateEvent
from pointsweep_api.models.prepare_batch import PrepareBatch, PrepareBatchStatusEnum, PreparedOrder
from pointsweep_api.models.sweep_run import SweepRun, SweepRunStatusEnum
from pointsweep_api.observability.pipeline import PipelineObservabilityStore, get_pipeline_store
from pointsweep_api.observability.tracing import pipeline_span
from pointsweep_api.services.identifiers import timestamped_id
from pointsweep_api.services.market_calendar import MarketCalendar, MarketStatus
from pointsweep_api.services.notifications.delivery import NotificationDelivery
from pointsweep_api.services.notifications.targets import TargetDirectory
from pointsweep_api.services.orders.repository import OrderRepository
from pointsweep_api.services.orders.state_machine import OrderStateMachine
from pointsweep_api.services.wallets import WalletLedger

PLACED_EVENT = "order.placed"


@dataclass(slots=True)
class GroupError:
    merchant_id: str
    broker: str | None
    error: str
    order_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "error": self.error,
            "order_ids": list(self.order_ids),
        }


@dataclass(slots=True)
class BatchSweepOutcome:
    batch_id: str
    sweep_run_id: str
    batch_status: str
    merchants_processed: int = 0
    orders_processed: int = 0
    orders_confirmed: int = 0
    orders_failed: int = 0
    orders_promoted: int = 0
    brokers_notified: list[str] = field(default_factory=list)
    errors: list[GroupError] = field(default_factory=list)
    skipped_members: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class SweepResult:
    status: str
    market: MarketStatus
    batches: list[BatchSweepOutcome] = field(default_factory=list)
    skipped_batches: list[dict[str, str]] = field(default_factory=list)

    @property
    def next_market_open(self) -> datetime | None:
        return self.market.next_open

    def _total(self, name: str) -> int:
        return sum(getattr(outcome, name) for outcome in self.batches)

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "market": self.market.as_dict(),
            "next_market_open": self.market.next_open.isoformat() if self.market.next_open else None,
            "delay_reason": self.market.delay_reason,
            "sweep_run_ids": [outcome.sweep_run_id for outcome in self.batches],
            "merchants_processed": self._total("merchants_processed"),
            "orders_processed": self._total("orders_processed"),
            "orders_confirmed": self._total("orders_confirmed"),
            "orders_failed": self._total("orders_failed"),
            "orders_promoted": self._total("orders_promoted"),
            "brokers_notified": sorted({broker for outcome in self.batches for broker in outcome.brokers_notified}),
            "errors": [error.as_dict() for outcome in self.batches for error in outcome.errors],
            "batches": [
                {
                    "batch_id": outcome.batch_id,
                    "sweep_run_id": outcome.sweep_run_id,
                    "batch_status": outcome.batch_status,
                    "orders_promoted": outcome.orders_promoted,
                    "orders_processed": outcome.orders_processed,
                    "orders_confirmed": outcome.orders_confirmed,
                    "orders_failed": outcome.orders_failed,
                    "skipped_members": outcome.skipped_members,
                }
                for outcome in self.batches
            ],
            "skipped_batches": self.skipped_batches,
        }


def _money(value: Any) -> float:
    return float(Decimal(str(value or 0)).quantize(Decimal("0.01")))


class SweepOrchestrator:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        delivery: NotificationDelivery,
        calendar: MarketCalendar,
        claim_ttl_seconds: int = 900,
        store: PipelineObservabilityStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._delivery = delivery
        self._calendar = calendar
        self._claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self._store = store or get_pipeline_store()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self, merchant_id: str | None = None, *, triggered_by: str = "admin") -> SweepResult:
        """Promote and notify every approved batch while the market is open."""

        market = self._calendar.status(self._clock())
        if not market.is_open:
            logger.info(
                "Sweep deferred, market closed",
                next_market_open=market.next_open.isoformat() if market.next_open else None,
                delay_reason=market.delay_reason,
            )
            self._store.record_market_closed()
            return SweepResult(status="market_closed", market=market)

        result = SweepResult(status="completed", market=market)
        for batch_id in await self._approved_batches(merchant_id):
            with pipeline_span("sweep.batch", batch_id=batch_id, merchant_id=merchant_id, triggered_by=triggered_by):
                outcome = await self._sweep_batch(batch_id, merchant_id=merchant_id, triggered_by=triggered_by, promote=True)
            if outcome is None:
                result.skipped_batches.append({"batch_id": batch_id, "reason": "claimed_by_another_sweep"})
                continue
            result.batches.append(outcome)
        if not result.batches and not result.skipped_batches:
            result.status = "no_batches"
        logger.info(
            "Sweep finished",
            status=result.status,
            batches=len(result.batches),
            skipped=len(result.skipped_batches),
        )
        return result

    async def retry_failed(self, batch_id: str, *, triggered_by: str = "retry") -> SweepResult:
        """Re-notify the pending orders of an approved batch."""

        batch_id = require(batch_id, "batch_id")
        async with self._session_factory() as session:
            batch = await session.get(PrepareBatch, batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            if batch.status != PrepareBatchStatusEnum.APPROVED:
                raise EligibilityError(
                    f"Batch {batch_id} is {batch.status.value}; only approved batches can be retried",
                    details={"batch_id": batch_id, "status": batch.status.value},
                )

        market = self._calendar.status(self._clock())
        if not market.is_open:
            self._store.record_market_closed()
            return SweepResult(status="market_closed", market=market)

        result = SweepResult(status="completed", market=market)
        with pipeline_span("sweep.retry", batch_id=batch_id, triggered_by=triggered_by):
            outcome = await self._sweep_batch(batch_id, merchant_id=None, triggered_by=triggered_by, promote=False)
        if outcome is None:
            result.skipped_batches.append({"batch_id": batch_id, "reason": "claimed_by_another_sweep"})
        else:
            result.batches.append(outcome)
        return result

    async def preview(self, merchant_id: str | None = None) -> dict[str, Any]:
        """Dry run: what a sweep would promote and notify right now."""

        market = self._calendar.status(self._clock())
        batch_ids = await self._approved_batches(merchant_id)
        groups: dict[tuple[str, str | None], dict[str, Any]] = {}

        async with self._session_factory() as session:
            if batch_ids:
                promoted = select(Order.prepared_order_id).where(Order.prepared_order_id.is_not(None))
                staged = select(
                    PreparedOrder.merchant_id,
                    PreparedOrder.broker,
                    func.count(PreparedOrder.id),
                    func.coalesce(func.sum(PreparedOrder.amount), 0),
                ).where(PreparedOrder.batch_id.in_(batch_ids), PreparedOrder.id.not_in(promoted))
                pending = select(
                    Order.merchant_id,
                    Order.broker,
                    func.count(Order.id),
                    func.coalesce(func.sum(Order.amount), 0),
                ).where(Order.batch_id.in_(batch_ids), Order.status == OrderStatusEnum.PENDING)
                if merchant_id:
                    staged = staged.where(PreparedOrder.merchant_id == merchant_id)
                    pending = pending.where(Order.merchant_id == merchant_id)
                staged = staged.group_by(PreparedOrder.merchant_id, PreparedOrder.broker)
                pending = pending.group_by(Order.merchant_id, Order.broker)

                for label, stmt in (("staged", staged), ("pending", pending)):
                    for merchant, broker, count, amount in (await session.execute(stmt)).all():
                        bucket = groups.setdefault(
                            (merchant, broker),
                            {"merchant_id": merchant, "broker": broker, "orders": 0, "amount": Decimal(0), "staged": 0, "pending": 0},
                        )
                        bucket["orders"] += int(count)
                        bucket[label] += int(count)
                        bucket["amount"] += Decimal(str(amount))

            directory = TargetDirectory(session)
            for bucket in groups.values():
                target = await directory.broker(bucket["broker"])
                bucket["endpoint_registered"] = bool(target.url)
                bucket["amount"] = _money(bucket["amount"])

        ordered = sorted(groups.values(), key=lambda item: (item["merchant_id"], item["broker"] or ""))
        return {
            "market": market.as_dict(),
            "would_run": market.is_open and bool(ordered),
            "batches": batch_ids,
            "groups": ordered,
            "total_orders": sum(item["orders"] for item in ordered),
            "total_amount": round(sum(item["amount"] for item in ordered), 2),
        }

    async def runs(self, *, batch_id: str | None = None, limit: int = 50) -> list[SweepRun]:
        stmt = select(SweepRun)
        if batch_id:
            stmt = stmt.where(SweepRun.batch_id == batch_id)
        stmt = stmt.order_by(SweepRun.started_at.desc(), SweepRun.id.desc()).limit(max(limit, 1))
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars())

    async def _approved_batches(self, merchant_id: str | None) -> list[str]:
        stmt = select(PrepareBatch.id).where(PrepareBatch.status == PrepareBatchStatusEnum.APPROVED)
        if merchant_id:
            stmt = stmt.where(
                select(PreparedOrder.id)
                .where(PreparedOrder.batch_id == PrepareBatch.id, PreparedOrder.merchant_id == merchant_id)
                .exists()
            )
        stmt = stmt.order_by(PrepareBatch.approved_at, PrepareBatch.id)
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars())

    async def _sweep_batch(
        self,
        batch_id: str,
        *,
        merchant_id: str | None,
        triggered_by: str,
        promote: bool,
    ) -> BatchSweepOutcome | None:
        now = self._clock()
        run_id = timestamped_id("SWP", now)
        if not await self._claim(batch_id, run_id, now):
            logger.info("Batch already claimed by another sweep", batch_id=batch_id)
            return None

        outcome = BatchSweepOutcome(batch_id=batch_id, sweep_run_id=run_id, batch_status=PrepareBatchStatusEnum.APPROVED.value)
        try:
            async with transaction(self._session_factory, operation="open_sweep_run") as session:
                session.add(
                    SweepRun(
                        id=run_id,
                        batch_id=batch_id,
                        merchant_filter=merchant_id,
                        triggered_by=triggered_by,
                        status=SweepRunStatusEnum.RUNNING,
                        started_at=now,
                        brokers_notified=[],
                        errors=[],
                    )
                )
            logger.info("Sweep run opened", sweep_run_id=run_id, batch_id=batch_id, triggered_by=triggered_by)

            skipped_members: set[str] = set()
            if promote:
                skipped_members = await self._promote(batch_id, merchant_id, outcome)
            await self._notify(batch_id, merchant_id, run_id, outcome)
            await self._complete_run(run_id, outcome)
            outcome.batch_status = await self._reconcile(batch_id, skipped_members)
        except PersistenceError as exc:
            self._store.record_sweep_error(str(exc))
            raise
        finally:
            await self._release(batch_id, run_id)

        self._store.record_sweep(
            run_id,
            orders_processed=outcome.orders_processed,
            orders_failed=outcome.orders_failed,
            group_errors=len(outcome.errors),
        )
        return outcome

    async def _claim(self, batch_id: str, token: str, now: datetime) -> bool:
        """Advisory lock: only one sweep works a batch until it releases or the claim goes stale."""

        cutoff = now - self._claim_ttl
        async with transaction(self._session_factory, operation="claim_batch") as session:
            result = await session.execute(
                update(PrepareBatch)
                .where(
                    PrepareBatch.id == batch_id,
                    PrepareBatch.status == PrepareBatchStatusEnum.APPROVED,
                    or_(PrepareBatch.sweep_claim.is_(None), PrepareBatch.sweep_claimed_at < cutoff),
                )
                .values(sweep_claim=token, sweep_claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _release(self, batch_id: str, token: str) -> None:
        try:
            async with transaction(self._session_factory, operation="release_batch") as session:
                await session.execute(
                    update(PrepareBatch)
                    .where(PrepareBatch.id == batch_id, PrepareBatch.sweep_claim == token)
                    .values(sweep_claim=None, sweep_claimed_at=None)
                    .execution_options(synchronize_session=False)
                )
        except PersistenceError:
            logger.warning("Batch claim not released; it expires after the claim TTL", batch_id=batch_id)

    async def _promote(self, batch_id: str, merchant_id: str | None, outcome: BatchSweepOutcome) -> set[str]:
        """Copy unpromoted staged lines into orders, one transaction per merchant and broker."""

        async with self._session_factory() as session:
            promoted = select(Order.prepared_order_id).where(Order.prepared_order_id.is_not(None))
            stmt = select(PreparedOrder).where(PreparedOrder.batch_id == batch_id, PreparedOrder.id.not_in(promoted))
            if merchant_id:
                stmt = stmt.where(PreparedOrder.merchant_id == merchant_id)
            lines = list((await session.execute(stmt.order_by(PreparedOrder.id))).scalars())

        groups: dict[tuple[str, str | None], list[PreparedOrder]] = defaultdict(list)
        for line in lines:
            groups[(line.merchant_id, line.broker)].append(line)

        skipped: set[str] = set()
        for (merchant, broker), group in sorted(groups.items(), key=lambda item: (item[0][0], item[0][1] or "")):
            try:
                inserted, short = await self._promote_group(batch_id, group)
            except PersistenceError as exc:
                outcome.errors.append(
                    GroupError(merchant_id=merchant, broker=broker, error=f"promotion failed: {exc.message}")
                )
                continue
            outcome.orders_promoted += inserted
            for member in short:
                skipped.add(member)
                outcome.skipped_members.append(
                    {"member_id": member, "merchant_id": merchant, "broker": broker, "reason": "insufficient_balance"}
                )
        return skipped

    async def _promote_group(self, batch_id: str, group: list[PreparedOrder]) -> tuple[int, list[str]]:
        by_member: dict[str, list[PreparedOrder]] = defaultdict(list)
        for line in group:
            by_member[line.member_id].append(line)

        inserted = 0
        short: list[str] = []
        now = self._clock()
        async with transaction(self._session_factory, operation="promote_orders") as session:
            wallets = WalletLedger(session)
            for member, member_lines in by_member.items():
                points = sum(int(line.points_used or 0) for line in member_lines)
                amount = sum((Decimal(str(line.amount)) for line in member_lines), Decimal(0))
                try:
                    await wallets.apply(member, points_delta=-points, cash_delta=-amount)
                except EligibilityError:
                    logger.warning("Member skipped at promotion", batch_id=batch_id, member_id=member, amount=str(amount))
                    short.append(member)
                    continue
                for line in member_lines:
                    order = Order(
                        member_id=line.member_id,
                        merchant_id=line.merchant_id,
                        batch_id=batch_id,
                        prepared_order_id=line.id,
                        basket_id=line.basket_id,
                        symbol=line.symbol,
                        shares=line.shares,
                        amount=line.amount,
                        points_used=line.points_used,
                        status=OrderStatusEnum.PENDING,
                        order_type=OrderTypeEnum.SWEEP,
                        broker=line.broker,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(order)
                    await session.flush()
                    session.add(
                        OrderStateEvent(
                            order_id=order.id,
                            from_status=None,
                            to_status=OrderStatusEnum.PENDING.value,
                            actor_type=OrderStateActorTypeEnum.SWEEP,
                            actor_label=batch_id,
                            notes="Promoted from prepared batch",
                            metadata_json={"prepared_order_id": line.id},
                        )
                    )
                    inserted += 1
        logger.info("Sweep group promoted", batch_id=batch_id, orders=inserted, skipped_members=len(short))
        return inserted, short

    async def _notify(self, batch_id: str, merchant_id: str | None, run_id: str, outcome: BatchSweepOutcome) -> None:
        async with self._session_factory() as session:
            pending = await OrderRepository(session).by_batch(
                batch_id,
                statuses=[OrderStatusEnum.PENDING],
                merchant_id=merchant_id,
            )
            groups: dict[tuple[str, str | None], list[Order]] = defaultdict(list)
            for order in pending:
                groups[(order.merchant_id, order.broker)].append(order)
            directory = TargetDirectory(session)
            targets = {key: await directory.broker(key[1]) for key in groups}

        outcome.merchants_processed = len({merchant for merchant, _ in groups})
        for (merchant, broker), orders in sorted(groups.items(), key=lambda item: (item[0][0], item[0][1] or "")):
            order_ids = [order.id for order in orders]
            outcome.orders_processed += len(orders)
            payload = self._payload(run_id, batch_id, merchant, broker, orders)
            baskets = {order.basket_id for order in orders}
            members = {order.member_id for order in orders}
            try:
                result = await self._delivery.send(
                    targets[(merchant, broker)],
                    PLACED_EVENT,
                    payload,
                    correlation_id=run_id,
                    merchant_id=merchant,
                    member_id=next(iter(members)) if len(members) == 1 else None,
                    basket_id=next(iter(baskets)) if len(baskets) == 1 else None,
                )
            except Exception as exc:
                outcome.orders_failed += len(orders)
                outcome.errors.append(
                    GroupError(merchant_id=merchant, broker=broker, error=f"delivery raised: {exc}", order_ids=order_ids)
                )
                logger.exception("Sweep group notification raised", sweep_run_id=run_id, merchant_id=merchant, broker=broker)
                continue
            if not result.success:
                outcome.orders_failed += len(orders)
                outcome.errors.append(
                    GroupError(merchant_id=merchant, broker=broker, error=result.error or "delivery failed", order_ids=order_ids)
                )
                logger.warning(
                    "Sweep group notification failed",
                    sweep_run_id=run_id,
                    merchant_id=merchant,
                    broker=broker,
                    error=result.error,
                )
                continue

            if broker and broker not in outcome.brokers_notified:
                outcome.brokers_notified.append(broker)
            try:
                outcome.orders_confirmed += await self._mark_placed(order_ids, run_id, result.external_reference)
            except PersistenceError as exc:
                outcome.errors.append(
                    GroupError(merchant_id=merchant, broker=broker, error=f"status update failed: {exc.message}", order_ids=order_ids)
                )
            logger.info(
                "Sweep group notified",
                sweep_run_id=run_id,
                batch_id=batch_id,
                merchant_id=merchant,
                broker=broker,
                orders=len(orders),
                broker_reference=result.external_reference,
            )

    async def _mark_placed(self, order_ids: Iterable[int], run_id: str, broker_reference: str | None) -> int:
        placed = 0
        async with transaction(self._session_factory, operation="mark_orders_placed") as session:
            machine = OrderStateMachine(session, clock=self._clock)
            for order in await OrderRepository(session).by_ids(order_ids):
                if order.status not in (OrderStatusEnum.PENDING, OrderStatusEnum.QUEUED):
                    continue
                try:
                    await machine.transition(
                        order,
                        OrderStatusEnum.PLACED,
                        actor_type=OrderStateActorTypeEnum.SWEEP,
                        actor_label=run_id,
                        metadata={"broker_reference": broker_reference},
                    )
                except ConcurrencyConflict:
                    continue
                order.sweep_run_id = run_id
                if broker_reference:
                    order.broker_reference = broker_reference
                placed += 1
        return placed

    async def _complete_run(self, run_id: str, outcome: BatchSweepOutcome) -> None:
        async with transaction(self._session_factory, operation="complete_sweep_run") as session:
            run = await session.get(SweepRun, run_id)
            run.status = SweepRunStatusEnum.COMPLETED
            run.completed_at = self._clock()
            run.merchants_processed = outcome.merchants_processed
            run.orders_processed = outcome.orders_processed
            run.orders_confirmed = outcome.orders_confirmed
            run.orders_failed = outcome.orders_failed
            run.brokers_notified = list(outcome.brokers_notified)
            run.errors = [error.as_dict() for error in outcome.errors]

    async def _reconcile(self, batch_id: str, skipped_members: set[str]) -> str:
        """Mark the batch submitted once nothing is left pending or unpromoted."""

        try:
            async with transaction(self._session_factory, operation="reconcile_batch") as session:
                batch = await session.get(PrepareBatch, batch_id)
                if batch is None or batch.status != PrepareBatchStatusEnum.APPROVED:
                    return batch.status.value if batch else "missing"

                pending = await session.scalar(
                    select(func.count(Order.id)).where(
                        Order.batch_id == batch_id,
                        Order.status.in_((OrderStatusEnum.PENDING, OrderStatusEnum.QUEUED)),
                    )
                )
                promoted = select(Order.prepared_order_id).where(Order.prepared_order_id.is_not(None))
                unpromoted_stmt = select(func.count(PreparedOrder.id)).where(
                    PreparedOrder.batch_id == batch_id,
                    PreparedOrder.id.not_in(promoted),
                )
                if skipped_members:
                    unpromoted_stmt = unpromoted_stmt.where(PreparedOrder.member_id.not_in(sorted(skipped_members)))
                unpromoted = await session.scalar(unpromoted_stmt)
                if pending or unpromoted:
                    return batch.status.value

                batch.status = PrepareBatchStatusEnum.SUBMITTED
                batch.submitted_at = self._clock()
            logger.info("Batch submitted", batch_id=batch_id)
            return PrepareBatchStatusEnum.SUBMITTED.value
        except PersistenceError as exc:
            logger.warning("Batch reconciliation failed", batch_id=batch_id, error=exc.message)
            return PrepareBatchStatusEnum.APPROVED.value

    def _payload(
        self,
        run_id: str,
        batch_id: str,
        merchant_id: str,
        broker: str | None,
        orders: list[Order],
    ) -> dict[str, Any]:
        now = self._clock()
        members: dict[str, dict[str, Any]] = {}
        for order in orders:
            entry = members.setdefault(
                order.basket_id,
                {"member_id": order.member_id, "basket_id": order.basket_id, "order_ids": [], "amount": Decimal(0)},
            )
            entry["order_ids"].append(order.id)
            entry["amount"] += Decimal(str(order.amount))
        total = sum((Decimal(str(order.amount)) for order in orders), Decimal(0))
        return {
            "event_type": PLACED_EVENT,
            "batch_id": run_id,
            "prepare_batch_id": batch_id,
            "merchant_id": merchant_id,
            "broker": broker,
            "sweep_date": now.date().isoformat(),
            "orders": [
                {
                    "order_id": order.id,
                    "member_id": order.member_id,
                    "basket_id": order.basket_id,
                    "symbol": order.symbol,
                    "shares": float(order.shares or 0),
                    "amount": _money(order.amount),
                    "points_used": int(order.points_used or 0),
                    "order_type": OrderTypeEnum.MARKET.value,
                }
                for order in orders
            ],
            "members": [{**entry, "amount": _money(entry["amount"])} for entry in members.values()],
            "total_amount": _money(total),
            "total_orders": len(orders),
            "timestamp": now.isoformat(),
        }


__all__ = ["BatchSweepOutcome", "GroupError", "SweepOrchestrator", "SweepResult", "PLACED_EVENT"]
