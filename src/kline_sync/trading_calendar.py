"""Trading-day rules for the Shanghai/Shenzhen exchanges.

The rule-based calendar (weekdays minus recurring holiday windows) is an
approximation: statutory holidays that move with the lunar calendar are not
expressible as fixed month/day windows. When an exchange calendar is available
(Tushare `trade_cal`), build the calendar with `from_trade_cal` and those rows
take precedence for every date they cover.
"""

from __future__ import annotations

import datetime as _dt
import re
from dataclasses import dataclass
from typing import Iterable
from zoneinfo import ZoneInfo

from kline_sync.models import MarketClock
from kline_sync.utils_dates import coerce_date


# Bound on the backward walk in most_recent_trading_day().
LOOKBACK_DAYS = 30

DEFAULT_SESSION_CLOSE = _dt.time(15, 0)
DEFAULT_TIMEZONE = "Asia/Shanghai"


_WINDOW_RE = re.compile(r"^\s*(\d{1,2})-(\d{1,2})\s*\.\.\s*(\d{1,2})-(\d{1,2})\s*$")


@dataclass(frozen=True)
class HolidayWindow:
    """Closed days recurring every year between two month/day bounds, inclusive."""

    name: str
    start_month: int
    start_day: int
    end_month: int
    end_day: int

    def contains(self, d: _dt.date) -> bool:
        key = (d.month, d.day)
        start = (self.start_month, self.start_day)
        end = (self.end_month, self.end_day)
        if start <= end:
            return start <= key <= end
        # Window wraps the year end (e.g. 12-30..01-02).
        return key >= start or key <= end

    @classmethod
    def parse(cls, name: str, spec: str) -> "HolidayWindow":
        """Parse 'MM-DD..MM-DD'."""
        m = _WINDOW_RE.match(spec or "")
        if not m:
            raise ValueError(f"Invalid holiday window {spec!r} for {name!r} (expected MM-DD..MM-DD)")
        sm, sd, em, ed = (int(x) for x in m.groups())
        for month, day in ((sm, sd), (em, ed)):
            # 2000 is a leap year, so 02-29 is accepted.
            _dt.date(2000, month, day)
        return cls(name=name, start_month=sm, start_day=sd, end_month=em, end_day=ed)


DEFAULT_HOLIDAYS: tuple[HolidayWindow, ...] = (
    HolidayWindow("labour_day", 5, 1, 5, 5),
    HolidayWindow("national_day", 10, 1, 10, 7),
)


class TradingCalendar:
    def __init__(
        self,
        holidays: Iterable[HolidayWindow] = DEFAULT_HOLIDAYS,
        *,
        closed_dates: Iterable[_dt.date] = (),
        exchange_days: dict[_dt.date, bool] | None = None,
        session_close: _dt.time = DEFAULT_SESSION_CLOSE,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self.holidays = tuple(holidays)
        self.closed_dates = frozenset(closed_dates)
        self.exchange_days = dict(exchange_days or {})
        self.session_close = session_close
        self.tz = ZoneInfo(timezone)

    @classmethod
    def from_trade_cal(cls, df, **kwargs) -> "TradingCalendar":
        """Build from a Tushare `trade_cal` frame (columns `cal_date`, `is_open`)."""
        days: dict[_dt.date, bool] = {}
        if df is not None and not getattr(df, "empty", True):
            for cal_date, is_open in zip(df["cal_date"].astype(str), df["is_open"]):
                days[coerce_date(cal_date)] = str(is_open).strip() in {"1", "True", "true"}
        return cls(exchange_days=days, **kwargs)

    def is_trading_day(self, d: _dt.date) -> bool:
        known = self.exchange_days.get(d)
        if known is not None:
            return known
        if d.weekday() >= 5:
            return False
        if d in self.closed_dates:
            return False
        return not any(h.contains(d) for h in self.holidays)

    def most_recent_trading_day(self, d: _dt.date) -> _dt.date | None:
        """Latest trading day <= d within LOOKBACK_DAYS, or None when unknown."""
        for back in range(LOOKBACK_DAYS + 1):
            cur = d - _dt.timedelta(days=back)
            if self.is_trading_day(cur):
                return cur
        return None

    def last_closed_trading_day(self, today: _dt.date, session_closed: bool) -> _dt.date | None:
        """Newest trading day whose session has ended."""
        if session_closed and self.is_trading_day(today):
            return today
        return self.most_recent_trading_day(today - _dt.timedelta(days=1))

    def localize(self, now: _dt.datetime) -> _dt.datetime:
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def clock(self, now: _dt.datetime | None = None) -> MarketClock:
        local = self.localize(now or _dt.datetime.now(self.tz))
        today = local.date()
        trading = self.is_trading_day(today)
        closed = (not trading) or local.time() >= self.session_close
        return MarketClock(
            now=local,
            today=today,
            is_trading_day=trading,
            session_closed=closed,
            last_closed_trading_day=self.last_closed_trading_day(today, closed),
        )
