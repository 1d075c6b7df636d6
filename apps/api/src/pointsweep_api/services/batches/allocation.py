"""Split a member's sweep across their active stock picks."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Sequence

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


@dataclass(slots=True, frozen=True)
class PickWeight:
    symbol: str
    allocation_pct: Decimal | None = None


@dataclass(slots=True, frozen=True)
class AllocationLine:
    symbol: str
    allocation_pct: Decimal
    amount: Decimal
    points: int


def effective_sweep_percentage(sweep_percentage: int | None) -> int:
    """Zero or unset means the whole balance is swept."""

    pct = int(sweep_percentage or 0)
    return 100 if pct <= 0 else min(pct, 100)


def sweep_points(points: int, sweep_percentage: int | None) -> int:
    pct = effective_sweep_percentage(sweep_percentage)
    return (max(int(points), 0) * pct) // 100


def normalise_weights(picks: Sequence[PickWeight]) -> list[Decimal]:
    """Custom allocations are scaled to total 100; otherwise picks share equally."""

    if not picks:
        return []
    custom = [pick.allocation_pct for pick in picks]
    if any(value is not None and value > 0 for value in custom):
        raw = [value if value is not None and value > 0 else Decimal(0) for value in custom]
        total = sum(raw, Decimal(0))
        return [value * HUNDRED / total for value in raw]
    share = HUNDRED / Decimal(len(picks))
    return [share for _ in picks]


def allocate(
    picks: Sequence[PickWeight],
    *,
    points: int,
    amount: Decimal,
) -> list[AllocationLine]:
    """Allocate points and cash per pick; cash rounds to cents and points floor per line."""

    weights = normalise_weights(picks)
    lines: list[AllocationLine] = []
    for pick, weight in zip(picks, weights):
        if weight <= 0:
            continue
        line_amount = (amount * weight / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
        line_points = int((Decimal(points) * weight / HUNDRED).to_integral_value(rounding=ROUND_FLOOR))
        lines.append(
            AllocationLine(
                symbol=pick.symbol,
                allocation_pct=weight.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP),
                amount=line_amount,
                points=line_points,
            )
        )
    # Half-up rounding may overshoot the member total by a cent or two; the last line absorbs it.
    overshoot = sum((line.amount for line in lines), Decimal(0)) - amount
    if lines and overshoot > 0:
        last = lines[-1]
        lines[-1] = AllocationLine(
            symbol=last.symbol,
            allocation_pct=last.allocation_pct,
            amount=max(last.amount - overshoot, Decimal(0)),
            points=last.points,
        )
    return lines


__all__ = [
    "AllocationLine",
    "PickWeight",
    "allocate",
    "effective_sweep_percentage",
    "normalise_weights",
    "sweep_points",
]
