"""Incremental sync planning.

For each (entity, granularity) the policy compares the newest stored period
against the market clock of the current run and decides what to fetch:

- nothing stored: fetch everything from the epoch;
- newest record inside the still-open period: delete it and refetch the
  current period snapshot (it was written while the period was incomplete);
- today's daily bar stored before the session closed: delete it and refetch
  once, after the close, so the final bar replaces the intraday snapshot;
- newest record in a closed period: fetch from that date forward (the upsert
  overwrites the boundary row);
- nothing new can exist yet: skip.
"""

from __future__ import annotations

import datetime as _dt
import logging

from kline_sync.interfaces import Repository
from kline_sync.models import Granularity, MarketClock, SyncMode, SyncWindow
from kline_sync.trading_calendar import TradingCalendar
from kline_sync.utils_dates import coerce_date


logger = logging.getLogger(__name__)


DEFAULT_EPOCH = _dt.date(1990, 1, 1)
DEFAULT_STALE_AFTER_DAYS = 30


class PeriodRule:
    granularity: Granularity

    def period_start(self, d: _dt.date) -> _dt.date:
        raise NotImplementedError

    def same_period(self, a: _dt.date, b: _dt.date) -> bool:
        raise NotImplementedError

    def is_open(self, last: _dt.date, clock: MarketClock) -> bool:
        return self.same_period(last, clock.today)


class DailyRule(PeriodRule):
    granularity = Granularity.DAILY

    def period_start(self, d: _dt.date) -> _dt.date:
        return d

    def same_period(self, a: _dt.date, b: _dt.date) -> bool:
        return a == b

    def is_open(self, last: _dt.date, clock: MarketClock) -> bool:
        return last == clock.today and clock.is_trading_day and not clock.session_closed


class WeeklyRule(PeriodRule):
    granularity = Granularity.WEEKLY

    def period_start(self, d: _dt.date) -> _dt.date:
        return d - _dt.timedelta(days=d.weekday())

    def same_period(self, a: _dt.date, b: _dt.date) -> bool:
        return a.isocalendar()[:2] == b.isocalendar()[:2]


class MonthlyRule(PeriodRule):
    granularity = Granularity.MONTHLY

    def period_start(self, d: _dt.date) -> _dt.date:
        return d.replace(day=1)

    def same_period(self, a: _dt.date, b: _dt.date) -> bool:
        return (a.year, a.month) == (b.year, b.month)


class YearlyRule(PeriodRule):
    granularity = Granularity.YEARLY

    def period_start(self, d: _dt.date) -> _dt.date:
        return _dt.date(d.year, 1, 1)

    def same_period(self, a: _dt.date, b: _dt.date) -> bool:
        return a.year == b.year


PERIOD_RULES: dict[Granularity, PeriodRule] = {
    r.granularity: r for r in (DailyRule(), WeeklyRule(), MonthlyRule(), YearlyRule())
}


class SyncPolicy:
    def __init__(
        self,
        repository: Repository,
        calendar: TradingCalendar,
        *,
        epoch: _dt.date = DEFAULT_EPOCH,
        stale_after_days: int = DEFAULT_STALE_AFTER_DAYS,
    ) -> None:
        self.repository = repository
        self.calendar = calendar
        self.epoch = epoch
        self.stale_after_days = int(stale_after_days)

    def plan(self, entity_id: str, granularity: Granularity, clock: MarketClock) -> SyncWindow:
        """
        Compute the fetch window for one entity.

        Raises ParseError when the stored period key is malformed; callers run
        one plan per task so the failure stays with that entity.
        """
        g = Granularity.parse(granularity)
        rule = PERIOD_RULES[g]
        today = clock.today

        latest = self.repository.get_latest(entity_id, g)
        if latest is None:
            return SyncWindow(entity_id, g, self.epoch, today, SyncMode.RANGE_FETCH, reason="no prior record")

        last = coerce_date(latest.last_period_date)

        if last > today:
            return SyncWindow(entity_id, g, last, today, SyncMode.SKIP, reason="latest record is in the future")

        if rule.is_open(last, clock):
            return SyncWindow(
                entity_id,
                g,
                rule.period_start(today),
                today,
                SyncMode.REFRESH_CURRENT_PERIOD,
                delete_date=last,
                reason="current period still open",
            )

        if (
            g is Granularity.DAILY
            and last == today
            and clock.is_trading_day
            and clock.session_closed
            and not self._written_after_close(latest.updated_at, today)
        ):
            return SyncWindow(
                entity_id,
                g,
                today,
                today,
                SyncMode.REFRESH_CURRENT_PERIOD,
                delete_date=last,
                reason="today's bar was written before the close",
            )

        if g is Granularity.DAILY and clock.last_closed_trading_day is not None and last >= clock.last_closed_trading_day:
            return SyncWindow(entity_id, g, last, today, SyncMode.SKIP, reason="up to date")

        return SyncWindow(entity_id, g, last, today, SyncMode.RANGE_FETCH, reason="resume from latest record")

    def _written_after_close(self, updated_at: _dt.datetime | None, day: _dt.date) -> bool:
        if updated_at is None:
            return False
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=_dt.timezone.utc)
        close = _dt.datetime.combine(day, self.calendar.session_close, tzinfo=self.calendar.tz)
        return updated_at >= close

    def is_stale(self, last_date: _dt.date, today: _dt.date) -> bool:
        return (today - last_date).days > self.stale_after_days

    def check_inactive(self, entity_id: str, clock: MarketClock) -> bool:
        """
        Flag the entity inactive when its newest daily record is stale.

        Returns True when the entity was flagged. Failures are logged, never raised:
        the fetch that preceded this check already succeeded.
        """
        try:
            latest = self.repository.get_latest(entity_id, Granularity.DAILY)
            if latest is None:
                return False
            last = coerce_date(latest.last_period_date)
            if not self.is_stale(last, clock.today):
                return False
            self.repository.update_status(entity_id, active=False)
        except Exception:  # noqa: BLE001
            logger.warning("inactive check failed for %s", entity_id, exc_info=True)
            return False
        logger.info("marked %s inactive (latest daily record %s)", entity_id, last.isoformat())
        return True
