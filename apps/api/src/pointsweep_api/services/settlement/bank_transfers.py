"""Merchant payouts over the bank rail, mirrored locally."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx
from loguru import logger
from sqlalchemy import func, select

from pointsweep_api.core.errors import ExternalDeliveryError, NotFoundError, ValidationError, require
from pointsweep_api.db.session import SessionFactory, transaction
from pointsweep_api.models.bank_transfer import BankTransfer, BankTransferStatusEnum
from pointsweep_api.models.order import Order

# Statuses a transfer may move to from each status. Settled and returned
# transfers never reopen; a settled transfer can still come back returned.
_NEXT_STATUSES: dict[BankTransferStatusEnum, set[BankTransferStatusEnum]] = {
    BankTransferStatusEnum.PENDING: {
        BankTransferStatusEnum.POSTED,
        BankTransferStatusEnum.SETTLED,
        BankTransferStatusEnum.FAILED,
        BankTransferStatusEnum.RETURNED,
    },
    BankTransferStatusEnum.POSTED: {
        BankTransferStatusEnum.SETTLED,
        BankTransferStatusEnum.FAILED,
        BankTransferStatusEnum.RETURNED,
    },
    BankTransferStatusEnum.FAILED: {BankTransferStatusEnum.PENDING, BankTransferStatusEnum.POSTED},
    BankTransferStatusEnum.SETTLED: {BankTransferStatusEnum.RETURNED},
    BankTransferStatusEnum.RETURNED: set(),
}


@dataclass(slots=True, frozen=True)
class TransferSubmission:
    external_id: str | None
    status: BankTransferStatusEnum


class BankTransferClient(Protocol):
    async def submit(self, *, idempotency_key: str, merchant_id: str, amount: Decimal) -> TransferSubmission:
        ...


def _parse_status(value: Any, default: BankTransferStatusEnum = BankTransferStatusEnum.POSTED) -> BankTransferStatusEnum:
    if value is None:
        return default
    try:
        return BankTransferStatusEnum(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown transfer status: {value}") from exc


class HttpBankTransferClient:
    """Posts transfers to the bank rail with the paid batch id as idempotency key."""

    def __init__(
        self,
        base_url: str | None,
        *,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._api_key = api_key
        self._http_client = http_client
        self._timeout = timeout_seconds

    async def submit(self, *, idempotency_key: str, merchant_id: str, amount: Decimal) -> TransferSubmission:
        if not self._base_url:
            raise ExternalDeliveryError("Bank transfer endpoint is not configured")

        headers = {"Idempotency-Key": idempotency_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        try:
            response = await client.post(
                f"{self._base_url}/transfers",
                json={"merchant_id": merchant_id, "amount": str(amount), "reference": idempotency_key},
                headers=headers,
            )
            response.raise_for_status()
            data = response.json() if response.content else {}
        except httpx.HTTPError as exc:
            raise ExternalDeliveryError(f"Bank transfer submission failed: {exc}") from exc
        except ValueError as exc:
            raise ExternalDeliveryError("Bank transfer response was not JSON") from exc
        finally:
            if owns_client:
                await client.aclose()

        if not isinstance(data, dict):
            data = {}
        return TransferSubmission(
            external_id=str(data["id"]) if data.get("id") is not None else data.get("external_id"),
            status=_parse_status(data.get("status")),
        )


class BankTransferService:
    def __init__(self, session_factory: SessionFactory, *, client: BankTransferClient) -> None:
        self._session_factory = session_factory
        self._client = client

    async def initiate_transfer(self, paid_batch_id: str) -> BankTransfer:
        """Create (or return) the transfer for a paid batch and submit it to the rail."""

        key = require(paid_batch_id, "paid_batch_id")
        async with transaction(self._session_factory, operation="initiate_transfer") as session:
            transfer = (
                await session.execute(select(BankTransfer).where(BankTransfer.idempotency_key == key))
            ).scalar_one_or_none()
            if transfer is not None and transfer.status != BankTransferStatusEnum.FAILED:
                logger.info("Bank transfer already initiated", idempotency_key=key, status=transfer.status.value)
                return transfer

            if transfer is None:
                row = (
                    await session.execute(
                        select(
                            func.min(Order.merchant_id),
                            func.count(Order.id),
                            func.coalesce(func.sum(Order.amount), 0),
                        ).where(Order.paid_batch_id == key)
                    )
                ).one()
                merchant_id, count, amount = row
                if not count:
                    raise NotFoundError(f"No paid orders for batch {key}")
                transfer = BankTransfer(
                    idempotency_key=key,
                    merchant_id=merchant_id,
                    amount=Decimal(str(amount)).quantize(Decimal("0.01")),
                    order_count=int(count),
                    status=BankTransferStatusEnum.PENDING,
                )
                session.add(transfer)
            else:
                transfer.status = BankTransferStatusEnum.PENDING
                transfer.failure_reason = None
            await session.flush()
            transfer_id = transfer.id
            merchant_id = transfer.merchant_id
            amount = Decimal(str(transfer.amount))

        try:
            submission = await self._client.submit(idempotency_key=key, merchant_id=merchant_id, amount=amount)
        except ExternalDeliveryError as exc:
            async with transaction(self._session_factory, operation="record_transfer_failure") as session:
                failed = await session.get(BankTransfer, transfer_id)
                failed.status = BankTransferStatusEnum.FAILED
                failed.failure_reason = exc.message
            logger.warning("Bank transfer submission failed", idempotency_key=key, error=exc.message)
            raise

        async with transaction(self._session_factory, operation="record_transfer_submission") as session:
            transfer = await session.get(BankTransfer, transfer_id)
            transfer.external_id = submission.external_id or transfer.external_id
            if submission.status in _NEXT_STATUSES[transfer.status]:
                transfer.status = submission.status
        logger.info(
            "Bank transfer submitted",
            idempotency_key=key,
            merchant_id=merchant_id,
            amount=str(amount),
            external_id=submission.external_id,
            status=transfer.status.value,
        )
        return transfer

    async def apply_transfer_status(
        self,
        idempotency_key: str,
        status: str,
        *,
        external_id: str | None = None,
        failure_reason: str | None = None,
    ) -> tuple[BankTransfer, bool]:
        """Reconcile a status reported by the rail; returns the transfer and whether it changed."""

        key = require(idempotency_key, "idempotency_key")
        target = _parse_status(require(status, "status"))
        async with transaction(self._session_factory, operation="apply_transfer_status") as session:
            transfer = (
                await session.execute(select(BankTransfer).where(BankTransfer.idempotency_key == key))
            ).scalar_one_or_none()
            if transfer is None:
                raise NotFoundError(f"Transfer {key} not found")
            if transfer.status == target or target not in _NEXT_STATUSES[transfer.status]:
                logger.info(
                    "Transfer status update ignored",
                    idempotency_key=key,
                    current=transfer.status.value,
                    reported=target.value,
                )
                return transfer, False
            transfer.status = target
            if external_id:
                transfer.external_id = external_id
            if target in (BankTransferStatusEnum.FAILED, BankTransferStatusEnum.RETURNED):
                transfer.failure_reason = failure_reason
        logger.info("Transfer status updated", idempotency_key=key, status=target.value)
        return transfer, True


__all__ = [
    "BankTransferClient",
    "BankTransferService",
    "HttpBankTransferClient",
    "TransferSubmission",
]
