from __future__ import annotations

from dataclasses import dataclass

from kline_sync.interfaces import Collector, Notifier, Repository
from kline_sync.sync_policy import SyncPolicy
from kline_sync.trading_calendar import TradingCalendar


@dataclass(frozen=True)
class Services:
    """Collaborators shared by every job of one process."""

    repository: Repository
    collector: Collector
    calendar: TradingCalendar
    policy: SyncPolicy
    notifier: Notifier
