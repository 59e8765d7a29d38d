from __future__ import annotations

import datetime as _dt
import numbers
from typing import Any

from kline_sync.errors import ParseError


def fmt_yyyymmdd(d: _dt.date) -> str:
    return d.strftime("%Y%m%d")


def coerce_date(value: Any) -> _dt.date:
    """
    Normalize a persisted period key to a date.

    Accepts date/datetime, YYYYMMDD ints and strings, and ISO strings.
    Anything else raises ParseError.
    """
    if isinstance(value, _dt.datetime):
        return value.date()
    if isinstance(value, _dt.date):
        return value
    if isinstance(value, numbers.Integral) and not isinstance(value, bool):
        value = str(int(value))
    if isinstance(value, str):
        s = value.strip()
        for fmt in ("%Y%m%d", "%Y-%m-%d"):
            try:
                return _dt.datetime.strptime(s, fmt).date()
            except ValueError:
                continue
    raise ParseError(f"cannot parse period date {value!r}")


def span_windows(start: _dt.date, end: _dt.date, *, years: int) -> list[tuple[_dt.date, _dt.date]]:
    """
    Split [start, end] into consecutive inclusive windows of at most `years`
    calendar years, aligned to January 1st.
    """
    if years <= 0:
        raise ValueError("years must be > 0")
    out: list[tuple[_dt.date, _dt.date]] = []
    y = start.year
    while y <= end.year:
        ws = max(start, _dt.date(y, 1, 1))
        we = min(end, _dt.date(y + years - 1, 12, 31))
        if ws <= we:
            out.append((ws, we))
        y += years
    return out
