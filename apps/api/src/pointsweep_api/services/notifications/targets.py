"""Resolve webhook endpoints for brokers and merchants."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from pointsweep_api.models.counterparty import Broker, Merchant
from pointsweep_api.models.notification import NotificationTargetTypeEnum


@dataclass(slots=True, frozen=True)
class WebhookTarget:
    target_type: NotificationTargetTypeEnum
    target_id: str | None
    name: str | None
    url: str | None
    secret: str | None = None
    api_key: str | None = None

    @property
    def label(self) -> str:
        return f"{self.target_type.value}:{self.name or self.target_id}"


def broker_target(broker: Broker) -> WebhookTarget:
    return WebhookTarget(
        target_type=NotificationTargetTypeEnum.BROKER,
        target_id=broker.broker_id,
        name=broker.broker_name,
        url=broker.webhook_url,
        secret=broker.webhook_secret,
        api_key=broker.api_key,
    )


def merchant_target(merchant: Merchant) -> WebhookTarget:
    return WebhookTarget(
        target_type=NotificationTargetTypeEnum.MERCHANT,
        target_id=merchant.merchant_id,
        name=merchant.merchant_name or merchant.merchant_id,
        url=merchant.webhook_url,
        secret=merchant.webhook_secret,
        api_key=merchant.api_key,
    )


class TargetDirectory:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_broker(self, name_or_id: str | None) -> Broker | None:
        if not name_or_id:
            return None
        result = await self._session.execute(
            select(Broker).where(or_(Broker.broker_id == name_or_id, Broker.broker_name == name_or_id))
        )
        return result.scalars().first()

    async def broker(self, name_or_id: str | None) -> WebhookTarget:
        """Unknown brokers resolve to a target without an endpoint so delivery records the gap."""

        broker = await self.find_broker(name_or_id)
        if broker is None:
            return WebhookTarget(
                target_type=NotificationTargetTypeEnum.BROKER,
                target_id=None,
                name=name_or_id,
                url=None,
            )
        return broker_target(broker)

    async def merchant(self, merchant_id: str) -> WebhookTarget:
        merchant = await self._session.get(Merchant, merchant_id)
        if merchant is None:
            return WebhookTarget(
                target_type=NotificationTargetTypeEnum.MERCHANT,
                target_id=merchant_id,
                name=merchant_id,
                url=None,
            )
        return merchant_target(merchant)

    async def resolve(self, target_type: NotificationTargetTypeEnum, target_id: str | None, name: str | None) -> WebhookTarget:
        if target_type == NotificationTargetTypeEnum.BROKER:
            return await self.broker(target_id or name)
        return await self.merchant(target_id or name or "")

    async def broker_by_api_key(self, api_key: str | None) -> Broker | None:
        if not api_key:
            return None
        result = await self._session.execute(
            select(Broker).where(Broker.api_key == api_key, Broker.is_active.is_(True))
        )
        return result.scalars().first()


__all__ = ["TargetDirectory", "WebhookTarget", "broker_target", "merchant_target"]
