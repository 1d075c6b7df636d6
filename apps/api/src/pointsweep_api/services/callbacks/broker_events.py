"""Apply inbound broker callbacks to orders exactly once."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Mapping

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from pointsweep_api.core.errors import AuthenticationError, ConcurrencyConflict, PersistenceError, ValidationError
from pointsweep_api.db.session import SessionFactory, transaction
from pointsweep_api.models.broker_event import BrokerEventReceipt
from pointsweep_api.models.counterparty import Broker
from pointsweep_api.models.order import Order, OrderStatusEnum
from pointsweep_api.models.order_state_event import OrderStateActorTypeEnum
from pointsweep_api.observability.pipeline import PipelineObservabilityStore, get_pipeline_store
from pointsweep_api.observability.tracing import pipeline_span
from pointsweep_api.services.identifiers import timestamped_id
from pointsweep_api.services.notifications.signing import verify
from pointsweep_api.services.notifications.targets import TargetDirectory
from pointsweep_api.services.orders.repository import OrderRepository
from pointsweep_api.services.orders.state_machine import FillData, OrderStateMachine


class BrokerEvent(str, Enum):
    ACKNOWLEDGED = "order.acknowledged"
    CONFIRMED = "order.confirmed"
    EXECUTED = "order.executed"
    REJECTED = "order.rejected"
    CANCELLED = "order.cancelled"
    SOLD = "order.sold"
    VALIDATE_CREDENTIALS = "credentials.validate"
    TEST = "test.connection"


EVENT_ALIASES: dict[str, BrokerEvent] = {
    "order.acknowledged": BrokerEvent.ACKNOWLEDGED,
    "order_acknowledged": BrokerEvent.ACKNOWLEDGED,
    "order.placed": BrokerEvent.ACKNOWLEDGED,
    "order_placed": BrokerEvent.ACKNOWLEDGED,
    "sweep.orders": BrokerEvent.ACKNOWLEDGED,
    "sweep_orders": BrokerEvent.ACKNOWLEDGED,
    "order.confirmed": BrokerEvent.CONFIRMED,
    "order_confirmed": BrokerEvent.CONFIRMED,
    "order.executed": BrokerEvent.EXECUTED,
    "order_executed": BrokerEvent.EXECUTED,
    "order.rejected": BrokerEvent.REJECTED,
    "order_rejected": BrokerEvent.REJECTED,
    "order.cancelled": BrokerEvent.CANCELLED,
    "order_cancelled": BrokerEvent.CANCELLED,
    "order.sold": BrokerEvent.SOLD,
    "order_sold": BrokerEvent.SOLD,
    "credentials.validate": BrokerEvent.VALIDATE_CREDENTIALS,
    "test.connection": BrokerEvent.TEST,
    "test": BrokerEvent.TEST,
}

# event -> (statuses it may be applied from, status it moves the order to)
_EVENT_RULES: dict[BrokerEvent, tuple[frozenset[OrderStatusEnum], OrderStatusEnum]] = {
    BrokerEvent.ACKNOWLEDGED: (
        frozenset({OrderStatusEnum.PENDING, OrderStatusEnum.QUEUED}),
        OrderStatusEnum.PLACED,
    ),
    BrokerEvent.CONFIRMED: (frozenset({OrderStatusEnum.PLACED}), OrderStatusEnum.CONFIRMED),
    BrokerEvent.EXECUTED: (
        frozenset({OrderStatusEnum.PLACED, OrderStatusEnum.CONFIRMED}),
        OrderStatusEnum.EXECUTED,
    ),
    BrokerEvent.REJECTED: (
        frozenset({OrderStatusEnum.PENDING, OrderStatusEnum.QUEUED, OrderStatusEnum.PLACED}),
        OrderStatusEnum.FAILED,
    ),
    BrokerEvent.CANCELLED: (
        frozenset({OrderStatusEnum.PENDING, OrderStatusEnum.PLACED}),
        OrderStatusEnum.CANCELLED,
    ),
    BrokerEvent.SOLD: (frozenset({OrderStatusEnum.SELL}), OrderStatusEnum.SOLD),
}

_REFERENCE_KEYS = ("broker_batch_id", "broker_reference", "reference_id", "broker_order_id")
_EXEC_KEYS = ("exec_id", "execution_id", "exec_reference")


class Outcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    DUPLICATE = "duplicate"
    HELD = "held"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass(slots=True)
class OrderTarget:
    order_id: int | None = None
    basket_id: str | None = None
    symbol: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CallbackResult:
    event: str
    canonical_event: str
    request_id: str
    broker_batch_id: str | None = None
    broker: str | None = None
    results: list[dict[str, Any]] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for item in self.results if item["outcome"] == outcome.value)

    def as_dict(self) -> dict[str, Any]:
        counts = {outcome.value: self.count(outcome) for outcome in Outcome}
        return {
            "event": self.event,
            "canonical_event": self.canonical_event,
            "request_id": self.request_id,
            "broker_batch_id": self.broker_batch_id,
            "broker": self.broker,
            "orders_updated": counts[Outcome.APPLIED.value],
            "counts": counts,
            "results": self.results,
            **self.extra,
        }


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _first(mapping: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = mapping.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def extract_fill(fields: Mapping[str, Any]) -> FillData | None:
    """Executed price and shares are required; a missing amount is derived from them."""

    price = _decimal(fields.get("executed_price", fields.get("price")))
    shares = _decimal(fields.get("executed_shares", fields.get("shares")))
    amount = _decimal(fields.get("executed_amount"))
    if price is None or shares is None:
        return None
    if amount is None:
        amount = (price * shares).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return FillData(price=price, shares=shares, amount=amount)


def _as_order_id(value: Any) -> int | None:
    try:
        return int(value) if value is not None and str(value).strip() else None
    except (TypeError, ValueError):
        return None


def _collect_targets(payload: Mapping[str, Any]) -> list[OrderTarget]:
    basket_id = payload.get("basket_id") or None
    targets: list[OrderTarget] = []

    for entry in payload.get("fills") or []:
        if isinstance(entry, Mapping):
            targets.append(
                OrderTarget(
                    order_id=_as_order_id(entry.get("order_id")),
                    basket_id=entry.get("basket_id") or basket_id,
                    symbol=entry.get("symbol"),
                    fields=dict(entry),
                )
            )
    for entry in payload.get("orders") or []:
        if isinstance(entry, Mapping):
            targets.append(
                OrderTarget(
                    order_id=_as_order_id(entry.get("order_id")),
                    basket_id=entry.get("basket_id") or basket_id,
                    symbol=entry.get("symbol"),
                    fields=dict(entry),
                )
            )
        elif _as_order_id(entry) is not None:
            targets.append(OrderTarget(order_id=_as_order_id(entry)))

    if not targets and _as_order_id(payload.get("order_id")) is not None:
        targets.append(OrderTarget(order_id=_as_order_id(payload.get("order_id")), fields=dict(payload)))
    if not targets and basket_id:
        targets.append(OrderTarget(basket_id=basket_id, fields=dict(payload)))
    return targets


class BrokerCallbackHandler:
    """Single entry point for broker webhooks."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        signature_required: bool = False,
        confirmation_retry_budget: int | None = None,
        store: PipelineObservabilityStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._signature_required = signature_required
        self._retry_budget = confirmation_retry_budget
        self._store = store or get_pipeline_store()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def authenticate(self, api_key: str | None) -> Broker | None:
        async with self._session_factory() as session:
            return await TargetDirectory(session).broker_by_api_key(api_key)

    async def handle(
        self,
        event_type: str | None,
        payload: Mapping[str, Any],
        *,
        api_key: str | None = None,
        raw_body: bytes | None = None,
        signature: str | None = None,
        request_id: str | None = None,
    ) -> CallbackResult:
        raw_event = (event_type or payload.get("event_type") or payload.get("event") or "").strip()
        request_id = request_id or _first(payload, ("request_id",)) or timestamped_id("brk")
        event = EVENT_ALIASES.get(raw_event)
        if event is None:
            logger.warning("Unsupported broker event", event_type=raw_event, request_id=request_id)
            self._store.record_callback(raw_event or "missing", "rejected")
            raise ValidationError(
                f"Unsupported event type: {raw_event or 'missing'}",
                details={"supported_events": sorted(EVENT_ALIASES)},
            )

        broker = await self.authenticate(api_key)
        if self._signature_required and event != BrokerEvent.TEST:
            if broker is None:
                raise AuthenticationError("Broker authentication failed")
            if not broker.webhook_secret or not verify(raw_body or b"", broker.webhook_secret, signature):
                logger.warning("Broker signature mismatch", broker=broker.broker_name, request_id=request_id)
                raise AuthenticationError("Invalid webhook signature")

        result = CallbackResult(
            event=raw_event,
            canonical_event=event.value,
            request_id=request_id,
            broker=broker.broker_name if broker else payload.get("broker"),
            broker_batch_id=_first(payload, ("broker_batch_id",)) or timestamped_id("BRK", self._clock()),
        )

        if event == BrokerEvent.TEST:
            result.extra = {"message": "Connection successful", "echo": payload.get("echo")}
            return result
        if event == BrokerEvent.VALIDATE_CREDENTIALS:
            result.extra = {"valid": broker is not None}
            logger.info("Broker credentials checked", valid=broker is not None, request_id=request_id)
            return result

        targets = _collect_targets(payload)
        if not targets:
            raise ValidationError("order_id, orders, fills or basket_id is required")

        with pipeline_span("callback.apply", event_type=event.value, request_id=request_id, broker=result.broker, targets=len(targets)):
            for target in targets:
                result.results.extend(await self._apply_target(event, target, payload, result, request_id))

        for outcome in Outcome:
            count = result.count(outcome)
            if count:
                self._store.record_callback(event.value, outcome.value, count)
        logger.info(
            "Broker callback processed",
            event_type=raw_event,
            request_id=request_id,
            applied=result.count(Outcome.APPLIED),
            duplicates=result.count(Outcome.DUPLICATE),
            conflicts=result.count(Outcome.CONFLICT),
        )
        return result

    async def _resolve(self, target: OrderTarget) -> list[int]:
        async with self._session_factory() as session:
            if target.order_id is not None:
                return [target.order_id]
            if not target.basket_id:
                return []
            orders = await OrderRepository(session).by_basket(target.basket_id)
            if target.symbol:
                orders = [order for order in orders if order.symbol.upper() == str(target.symbol).upper()]
            return [order.id for order in orders]

    async def _apply_target(
        self,
        event: BrokerEvent,
        target: OrderTarget,
        payload: Mapping[str, Any],
        result: CallbackResult,
        request_id: str,
    ) -> list[dict[str, Any]]:
        order_ids = await self._resolve(target)
        if not order_ids:
            return [
                {
                    "order_id": target.order_id,
                    "basket_id": target.basket_id,
                    "symbol": target.symbol,
                    "outcome": Outcome.NOT_FOUND.value,
                }
            ]
        outcomes = []
        for order_id in order_ids:
            try:
                outcomes.append(await self._apply(event, order_id, target.fields, payload, result, request_id))
            except PersistenceError as exc:
                if isinstance(exc.__cause__, IntegrityError):
                    outcomes.append({"order_id": order_id, "outcome": Outcome.DUPLICATE.value})
                    continue
                raise
        return outcomes

    async def _apply(
        self,
        event: BrokerEvent,
        order_id: int,
        fields: Mapping[str, Any],
        payload: Mapping[str, Any],
        result: CallbackResult,
        request_id: str,
    ) -> dict[str, Any]:
        sources, target_status = _EVENT_RULES[event]
        reference = _first(fields, _REFERENCE_KEYS) or _first(payload, _REFERENCE_KEYS) or result.broker_batch_id
        exec_reference = _first(fields, _EXEC_KEYS) or _first(payload, _EXEC_KEYS)

        async with transaction(self._session_factory, operation="apply_broker_event") as session:
            receipt = await session.execute(
                select(BrokerEventReceipt).where(
                    BrokerEventReceipt.order_id == order_id,
                    BrokerEventReceipt.event_type == event.value,
                )
            )
            if receipt.scalar_one_or_none() is not None:
                return {"order_id": order_id, "outcome": Outcome.DUPLICATE.value}

            order = await session.get(Order, order_id)
            if order is None:
                return {"order_id": order_id, "outcome": Outcome.NOT_FOUND.value}

            machine = OrderStateMachine(session, confirmation_retry_budget=self._retry_budget, clock=self._clock)
            current = order.status
            if current in sources:
                try:
                    outcome = await self._transition(machine, event, order, target_status, fields, payload, reference, result)
                except ConcurrencyConflict as exc:
                    return {"order_id": order_id, "outcome": Outcome.CONFLICT.value, "status": exc.details["status"]}
            elif OrderStateMachine.has_reached(current, target_status):
                outcome = Outcome.ALREADY_APPLIED
            else:
                logger.warning(
                    "Broker event conflicts with order state",
                    order_id=order_id,
                    event_type=event.value,
                    status=current.value,
                )
                return {"order_id": order_id, "outcome": Outcome.CONFLICT.value, "status": current.value}

            if outcome in (Outcome.APPLIED, Outcome.ALREADY_APPLIED):
                session.add(
                    BrokerEventReceipt(
                        order_id=order_id,
                        event_type=event.value,
                        broker=result.broker,
                        request_id=request_id,
                        broker_reference=reference,
                        exec_reference=exec_reference,
                        outcome=outcome.value,
                        payload_excerpt={key: fields.get(key) for key in list(fields)[:20]},
                    )
                )
                await session.flush()
            return {"order_id": order_id, "outcome": outcome.value, "status": order.status.value}

    async def _transition(
        self,
        machine: OrderStateMachine,
        event: BrokerEvent,
        order: Order,
        target_status: OrderStatusEnum,
        fields: Mapping[str, Any],
        payload: Mapping[str, Any],
        reference: str | None,
        result: CallbackResult,
    ) -> Outcome:
        label = result.broker or "broker"
        metadata = {"event": event.value, "request_id": result.request_id, "broker_reference": reference}

        if target_status in OrderStateMachine.FILL_REQUIRED:
            fill = extract_fill(fields)
            if fill is None and order.status == OrderStatusEnum.CONFIRMED and order.executed_price is not None:
                fill = FillData(
                    price=Decimal(str(order.executed_price)),
                    shares=Decimal(str(order.executed_shares)),
                    amount=Decimal(str(order.executed_amount)),
                )
            if fill is None:
                status = await machine.record_unfilled_confirmation(order, actor_label=label, metadata=metadata)
                return Outcome.APPLIED if status == OrderStatusEnum.FAILED else Outcome.HELD
            await machine.transition(
                order,
                target_status,
                actor_type=OrderStateActorTypeEnum.BROKER,
                actor_label=label,
                metadata=metadata,
                fill=fill,
            )
            return Outcome.APPLIED

        notes = None
        if target_status in (OrderStatusEnum.FAILED, OrderStatusEnum.CANCELLED):
            notes = str(fields.get("reason") or payload.get("reason") or f"{event.value} from broker")
        await machine.transition(
            order,
            target_status,
            actor_type=OrderStateActorTypeEnum.BROKER,
            actor_label=label,
            notes=notes,
            metadata=metadata,
        )
        if event == BrokerEvent.ACKNOWLEDGED and reference and not order.broker_reference:
            order.broker_reference = reference
        return Outcome.APPLIED


__all__ = [
    "BrokerCallbackHandler",
    "BrokerEvent",
    "CallbackResult",
    "EVENT_ALIASES",
    "Outcome",
    "extract_fill",
]
