"""Wallet ledger used by promotion and refunds."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pointsweep_api.core.errors import EligibilityError
from pointsweep_api.models.wallet import Wallet, WalletStatusEnum


@dataclass(slots=True, frozen=True)
class WalletSnapshot:
    member_id: str
    merchant_id: str
    points: int
    cash_balance: Decimal
    sweep_enrolled: bool
    sweep_percentage: int
    conversion_rate: Decimal | None
    member_tier: str | None
    broker: str | None
    status: WalletStatusEnum

    @property
    def is_active(self) -> bool:
        return self.status == WalletStatusEnum.ACTIVE


def _snapshot(wallet: Wallet) -> WalletSnapshot:
    return WalletSnapshot(
        member_id=wallet.member_id,
        merchant_id=wallet.merchant_id,
        points=int(wallet.points or 0),
        cash_balance=Decimal(str(wallet.cash_balance or 0)),
        sweep_enrolled=bool(wallet.sweep_enrolled),
        sweep_percentage=int(wallet.sweep_percentage or 0),
        conversion_rate=Decimal(str(wallet.conversion_rate)) if wallet.conversion_rate is not None else None,
        member_tier=wallet.member_tier,
        broker=wallet.broker,
        status=wallet.status,
    )


class WalletLedger:
    """Reads and mutates member balances inside the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def read(self, member_id: str) -> WalletSnapshot | None:
        wallet = await self._session.get(Wallet, member_id)
        return _snapshot(wallet) if wallet else None

    async def read_many(self, member_ids: Iterable[str]) -> dict[str, WalletSnapshot]:
        ids = sorted(set(member_ids))
        if not ids:
            return {}
        result = await self._session.execute(select(Wallet).where(Wallet.member_id.in_(ids)))
        return {wallet.member_id: _snapshot(wallet) for wallet in result.scalars()}

    async def apply(self, member_id: str, *, points_delta: int, cash_delta: Decimal) -> None:
        """Adjust balances with a guarded UPDATE; an overdraft leaves the wallet untouched."""

        stmt = (
            update(Wallet)
            .where(
                Wallet.member_id == member_id,
                Wallet.points + points_delta >= 0,
                Wallet.cash_balance + cash_delta >= 0,
            )
            .values(
                points=Wallet.points + points_delta,
                cash_balance=Wallet.cash_balance + cash_delta,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                "Wallet adjustment rejected",
                member_id=member_id,
                points_delta=points_delta,
                cash_delta=str(cash_delta),
            )
            raise EligibilityError(
                f"Wallet for member {member_id} cannot cover the adjustment",
                details={"member_id": member_id},
            )
        logger.debug("Wallet adjusted", member_id=member_id, points_delta=points_delta, cash_delta=str(cash_delta))


__all__ = ["WalletLedger", "WalletSnapshot"]
