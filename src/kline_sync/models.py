from __future__ import annotations

import datetime as _dt
import enum
from dataclasses import dataclass
from typing import Any


class Granularity(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def table(self) -> str:
        return f"kline_{self.value}"

    @classmethod
    def parse(cls, value: "str | Granularity") -> "Granularity":
        if isinstance(value, Granularity):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown granularity: {value!r} (expected one of {[g.value for g in cls]})") from None


class SyncMode(str, enum.Enum):
    RANGE_FETCH = "range_fetch"
    REFRESH_CURRENT_PERIOD = "refresh_current_period"
    SKIP = "skip"


@dataclass(frozen=True)
class Entity:
    ts_code: str
    name: str = ""
    list_date: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class LatestRecord:
    """Newest persisted period for one (entity, granularity); read from the repository."""

    entity_id: str
    granularity: Granularity
    last_period_date: Any
    updated_at: _dt.datetime | None = None


@dataclass(frozen=True)
class SyncWindow:
    entity_id: str
    granularity: Granularity
    start_date: _dt.date
    end_date: _dt.date
    mode: SyncMode
    # Exact period key of the open record to delete before refetching.
    delete_date: _dt.date | None = None
    reason: str = ""

    def describe(self) -> str:
        out = f"{self.entity_id} {self.granularity.value} {self.mode.value} {self.start_date:%Y%m%d}..{self.end_date:%Y%m%d}"
        if self.delete_date is not None:
            out += f" delete={self.delete_date:%Y%m%d}"
        if self.reason:
            out += f" ({self.reason})"
        return out


@dataclass(frozen=True)
class MarketClock:
    """Result of the one trading-calendar check made at the start of a job run."""

    now: _dt.datetime
    today: _dt.date
    is_trading_day: bool
    session_closed: bool
    last_closed_trading_day: _dt.date | None
