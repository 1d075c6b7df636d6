"""US equity session calendar backed by ``exchange_calendars``."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Iterable
from zoneinfo import ZoneInfo

import exchange_calendars as xcals
import pandas as pd

# Session bounds loaded for the exchange; lookups outside raise DateOutOfBounds.
CALENDAR_START = "2020-01-01"
CALENDAR_END = "2035-12-31"


@dataclass(slots=True, frozen=True)
class MarketStatus:
    is_open: bool
    now: datetime
    next_open: datetime | None
    next_close: datetime | None
    delay_reason: str | None

    def as_dict(self) -> dict[str, object]:
        return {
            "is_open": self.is_open,
            "now": self.now.isoformat(),
            "next_market_open": self.next_open.isoformat() if self.next_open else None,
            "next_market_close": self.next_close.isoformat() if self.next_close else None,
            "delay_reason": self.delay_reason,
        }


@lru_cache(maxsize=8)
def _load_calendar(code: str) -> Any:
    return xcals.get_calendar(code, start=CALENDAR_START, end=CALENDAR_END)


class MarketCalendar:
    """Exchange sessions (holidays and early closes included) minus extra closures.

    ``holidays`` lists additional dates the pipeline treats as closed, such as
    unscheduled exchange closures not yet in the published calendar.
    """

    def __init__(self, *, exchange: str = "XNYS", holidays: Iterable[date] = ()) -> None:
        self._calendar = _load_calendar(exchange.upper())
        self._tz = ZoneInfo(str(self._calendar.tz))
        self._closures = frozenset(holidays)

    def _local(self, now: datetime | None) -> datetime:
        current = now or datetime.now(timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current.astimezone(self._tz)

    def _session_bounds(self, day: date) -> tuple[datetime, datetime]:
        session = pd.Timestamp(day)
        open_at = self._calendar.session_open(session).to_pydatetime().astimezone(self._tz)
        close_at = self._calendar.session_close(session).to_pydatetime().astimezone(self._tz)
        return open_at, close_at

    def is_trading_day(self, day: date) -> bool:
        return day not in self._closures and bool(self._calendar.is_session(pd.Timestamp(day)))

    def is_open(self, now: datetime | None = None) -> bool:
        local = self._local(now)
        if not self.is_trading_day(local.date()):
            return False
        open_at, close_at = self._session_bounds(local.date())
        return open_at <= local < close_at

    def next_open(self, now: datetime | None = None) -> datetime:
        local = self._local(now)
        day = local.date()
        if self.is_trading_day(day):
            open_at, _ = self._session_bounds(day)
            if local < open_at:
                return open_at
        session = self._calendar.date_to_session(pd.Timestamp(day + timedelta(days=1)), direction="next")
        while session.date() in self._closures:
            session = self._calendar.next_session(session)
        return self._session_bounds(session.date())[0]

    def status(self, now: datetime | None = None) -> MarketStatus:
        local = self._local(now)
        day = local.date()
        if self.is_trading_day(day):
            open_at, close_at = self._session_bounds(day)
            if open_at <= local < close_at:
                return MarketStatus(
                    is_open=True,
                    now=local,
                    next_open=None,
                    next_close=close_at,
                    delay_reason=None,
                )
            reason = "pre_market" if local < open_at else "after_hours"
        elif day.weekday() >= 5:
            reason = "weekend"
        else:
            reason = "holiday"
        return MarketStatus(
            is_open=False,
            now=local,
            next_open=self.next_open(local),
            next_close=None,
            delay_reason=reason,
        )


__all__ = ["MarketCalendar", "MarketStatus"]
