from __future__ import annotations

import datetime as _dt
from typing import TYPE_CHECKING, Protocol

import pandas as pd

from kline_sync.context import Context
from kline_sync.models import Entity, Granularity, LatestRecord, MarketClock, SyncWindow

if TYPE_CHECKING:
    from kline_sync.stats import JobReport


class Repository(Protocol):
    def get_latest(self, entity_id: str, granularity: Granularity) -> LatestRecord | None: ...

    def delete(self, entity_id: str, period_date: _dt.date, granularity: Granularity) -> int: ...

    def upsert_batch(self, granularity: Granularity, rows: pd.DataFrame) -> int: ...

    def update_status(self, entity_id: str, active: bool) -> None: ...

    def list_entities(self, *, active_only: bool = False) -> list[Entity]: ...

    def upsert_entities(self, rows: pd.DataFrame) -> int: ...

    def upsert_reports(self, table: str, rows: pd.DataFrame) -> int: ...

    def record_job_run(self, report: "JobReport") -> None: ...

    def job_runs(self, *, limit: int = 20) -> pd.DataFrame: ...


class Collector(Protocol):
    def fetch(self, entity_id: str, window: SyncWindow, *, ctx: Context | None = None) -> pd.DataFrame: ...

    def fetch_current_period(
        self,
        entity_id: str,
        granularity: Granularity,
        clock: MarketClock,
        *,
        ctx: Context | None = None,
    ) -> pd.DataFrame: ...

    def fetch_entities(self, *, ctx: Context | None = None) -> pd.DataFrame: ...

    def fetch_performance(self, entity_id: str, *, ctx: Context | None = None) -> pd.DataFrame: ...

    def fetch_shareholders(self, entity_id: str, *, ctx: Context | None = None) -> pd.DataFrame: ...


class Notifier(Protocol):
    def send(self, text: str) -> None: ...
