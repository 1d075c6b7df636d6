"""Webhook delivery with a durable notification ledger.

Every delivery is persisted as ``pending`` and committed before the HTTP call
is made, so a crash mid-flight always leaves a row an operator can retry. The
HTTP call itself runs with no transaction open.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

import httpx
from loguru import logger
from sqlalchemy import select

from pointsweep_api.core.errors import EligibilityError, NotFoundError, require
from pointsweep_api.db.session import SessionFactory, transaction
from pointsweep_api.models.notification import (
    Notification,
    NotificationStatusEnum,
    NotificationTargetTypeEnum,
)
from pointsweep_api.observability.pipeline import PipelineObservabilityStore, get_pipeline_store
from pointsweep_api.observability.tracing import pipeline_span
from pointsweep_api.services.notifications.signing import SIGNATURE_HEADER, canonical_json, sign
from pointsweep_api.services.notifications.targets import TargetDirectory, WebhookTarget

NO_ENDPOINT_ERROR = "No webhook URL configured"
_REFERENCE_KEYS = ("broker_batch_id", "reference_id", "broker_reference", "batch_id")
_RESPONSE_BODY_LIMIT = 4000


@dataclass(slots=True)
class DeliveryResult:
    notification_id: int
    status: NotificationStatusEnum
    response_code: int | None = None
    error: str | None = None
    external_reference: str | None = None
    response_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == NotificationStatusEnum.SENT

    def as_dict(self) -> dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "status": self.status.value,
            "response_code": self.response_code,
            "error": self.error,
            "external_reference": self.external_reference,
        }


def _parse_response(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _external_reference(payload: dict[str, Any]) -> str | None:
    for key in _REFERENCE_KEYS:
        value = payload.get(key)
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    return None


class NotificationDelivery:
    """Signs, sends and records webhook notifications."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 20.0,
        connect_timeout_seconds: float = 8.0,
        user_agent: str = "pointsweep-webhooks",
        store: PipelineObservabilityStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._http_client = http_client
        self._timeout = httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds)
        self._user_agent = user_agent
        self._store = store or get_pipeline_store()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def send(
        self,
        target: WebhookTarget,
        event_type: str,
        payload: dict[str, Any],
        *,
        correlation_id: str | None = None,
        member_id: str | None = None,
        merchant_id: str | None = None,
        basket_id: str | None = None,
    ) -> DeliveryResult:
        """Persist the notification as pending, then deliver it."""

        event_type = require(event_type, "event_type")
        body = canonical_json(payload)
        async with transaction(self._session_factory, operation="record_notification") as session:
            notification = Notification(
                target_type=target.target_type,
                target_id=target.target_id,
                target_name=target.name,
                event_type=event_type,
                status=NotificationStatusEnum.PENDING,
                payload=body,
                member_id=member_id,
                merchant_id=merchant_id,
                basket_id=basket_id,
                correlation_id=correlation_id,
                attempts=0,
            )
            session.add(notification)
            await session.flush()
            notification_id = notification.id

        with pipeline_span("notification.deliver", notification_id=notification_id, target=target.label, event_type=event_type):
            return await self._deliver(notification_id, target, event_type, body)

    async def retry(self, notification_id: int) -> DeliveryResult:
        """Reset a failed or stuck notification to pending and re-deliver its stored payload."""

        require(notification_id, "notification_id")
        async with transaction(self._session_factory, operation="reset_notification") as session:
            notification = await session.get(Notification, notification_id)
            if notification is None:
                raise NotFoundError(f"Notification {notification_id} not found")
            if notification.status == NotificationStatusEnum.SENT:
                raise EligibilityError(
                    f"Notification {notification_id} was already sent",
                    details={"notification_id": notification_id},
                )
            notification.status = NotificationStatusEnum.PENDING
            notification.error_message = None
            notification.response_code = None
            notification.response_body = None
            target = await TargetDirectory(session).resolve(
                notification.target_type,
                notification.target_id,
                notification.target_name,
            )
            event_type = notification.event_type
            body = notification.payload

        logger.info("Retrying notification", notification_id=notification_id, target=target.label)
        with pipeline_span("notification.retry", notification_id=notification_id, target=target.label, event_type=event_type):
            return await self._deliver(notification_id, target, event_type, body)

    async def list(
        self,
        *,
        status: NotificationStatusEnum | None = None,
        target_type: NotificationTargetTypeEnum | None = None,
        event_type: str | None = None,
        correlation_id: str | None = None,
        merchant_id: str | None = None,
        limit: int = 100,
    ) -> list[Notification]:
        stmt = select(Notification)
        if status:
            stmt = stmt.where(Notification.status == status)
        if target_type:
            stmt = stmt.where(Notification.target_type == target_type)
        if event_type:
            stmt = stmt.where(Notification.event_type == event_type)
        if correlation_id:
            stmt = stmt.where(Notification.correlation_id == correlation_id)
        if merchant_id:
            stmt = stmt.where(Notification.merchant_id == merchant_id)
        stmt = stmt.order_by(Notification.id.desc()).limit(max(limit, 1))
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars())

    async def _deliver(
        self,
        notification_id: int,
        target: WebhookTarget,
        event_type: str,
        body: str,
    ) -> DeliveryResult:
        if not target.url:
            logger.warning("Notification target has no endpoint", notification_id=notification_id, target=target.label)
            return await self._record(
                notification_id,
                event_type,
                target,
                status=NotificationStatusEnum.FAILED,
                error=NO_ENDPOINT_ERROR,
            )

        request_id = uuid4().hex
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            "X-Event-Type": event_type,
            "X-Request-Id": request_id,
        }
        if target.secret:
            headers[SIGNATURE_HEADER] = sign(body, target.secret)
        if target.api_key:
            headers["Authorization"] = f"Bearer {target.api_key}"

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(
                target.url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self._timeout,
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning(
                "Notification transport failure",
                notification_id=notification_id,
                target=target.label,
                request_id=request_id,
                error=error,
            )
            return await self._record(
                notification_id,
                event_type,
                target,
                status=NotificationStatusEnum.FAILED,
                error=error,
            )
        finally:
            if owns_client:
                await client.aclose()

        response_text = response.text[:_RESPONSE_BODY_LIMIT]
        parsed = _parse_response(response)
        if not response.is_success:
            logger.warning(
                "Notification rejected by target",
                notification_id=notification_id,
                target=target.label,
                status_code=response.status_code,
            )
            return await self._record(
                notification_id,
                event_type,
                target,
                status=NotificationStatusEnum.FAILED,
                response_code=response.status_code,
                response_body=response_text,
                error=f"HTTP {response.status_code}",
                response_payload=parsed,
            )

        return await self._record(
            notification_id,
            event_type,
            target,
            status=NotificationStatusEnum.SENT,
            response_code=response.status_code,
            response_body=response_text,
            external_reference=_external_reference(parsed),
            response_payload=parsed,
        )

    async def _record(
        self,
        notification_id: int,
        event_type: str,
        target: WebhookTarget,
        *,
        status: NotificationStatusEnum,
        response_code: int | None = None,
        response_body: str | None = None,
        error: str | None = None,
        external_reference: str | None = None,
        response_payload: dict[str, Any] | None = None,
    ) -> DeliveryResult:
        now = self._clock()
        async with transaction(self._session_factory, operation="record_delivery") as session:
            notification = await session.get(Notification, notification_id)
            if notification is None:
                raise NotFoundError(f"Notification {notification_id} not found")
            notification.status = status
            notification.response_code = response_code
            notification.response_body = response_body
            notification.error_message = error
            notification.attempts = (notification.attempts or 0) + 1
            notification.updated_at = now
            if status == NotificationStatusEnum.SENT:
                notification.sent_at = now
                if external_reference:
                    notification.external_reference = external_reference

        success = status == NotificationStatusEnum.SENT
        self._store.record_delivery(event_type, success=success, target=target.label, error=error)
        if success:
            logger.info(
                "Notification delivered",
                notification_id=notification_id,
                target=target.label,
                event_type=event_type,
                external_reference=external_reference,
            )
        return DeliveryResult(
            notification_id=notification_id,
            status=status,
            response_code=response_code,
            error=error,
            external_reference=external_reference,
            response_payload=response_payload or {},
        )


def decode_payload(notification: Notification) -> dict[str, Any]:
    try:
        data = json.loads(notification.payload or "{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


__all__ = ["DeliveryResult", "NO_ENDPOINT_ERROR", "NotificationDelivery", "decode_payload"]
