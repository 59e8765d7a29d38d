from __future__ import annotations

import datetime as _dt
import logging

import pandas as pd

from kline_sync.context import Context
from kline_sync.errors import ParseError
from kline_sync.models import Granularity, MarketClock, SyncWindow
from kline_sync.sync_policy import PERIOD_RULES
from kline_sync.tushare_client import TushareClient
from kline_sync.utils_dates import fmt_yyyymmdd, span_windows


logger = logging.getLogger(__name__)


BAR_FIELDS = "ts_code,trade_date,open,high,low,close,vol,amount"
BAR_COLUMNS = BAR_FIELDS.split(",")

STOCK_FIELDS = "ts_code,name,list_date,list_status"
PERFORMANCE_FIELDS = "ts_code,ann_date,end_date,eps,bps,roe,netprofit_yoy,or_yoy,grossprofit_margin"
SHAREHOLDER_FIELDS = "ts_code,ann_date,end_date,holder_num"

_BAR_APIS = {
    Granularity.DAILY: "daily",
    Granularity.WEEKLY: "weekly",
    Granularity.MONTHLY: "monthly",
}


def normalize_bars(df: pd.DataFrame | None, entity_id: str) -> pd.DataFrame:
    """Project a provider frame onto BAR_COLUMNS, sorted by trade_date."""
    if df is None or df.empty:
        return pd.DataFrame(columns=BAR_COLUMNS)
    if "trade_date" not in df.columns:
        raise ParseError(f"bar payload for {entity_id} has no trade_date column (got {list(df.columns)})")
    out = df.copy()
    if "ts_code" not in out.columns:
        out["ts_code"] = entity_id
    for c in BAR_COLUMNS:
        if c not in out.columns:
            out[c] = None
    out["trade_date"] = out["trade_date"].astype(str).str.replace("-", "", regex=False)
    bad = ~out["trade_date"].str.fullmatch(r"\d{8}")
    if bad.any():
        raise ParseError(f"bar payload for {entity_id} has malformed trade_date {out.loc[bad, 'trade_date'].iloc[0]!r}")
    out = out[BAR_COLUMNS].sort_values("trade_date", kind="stable")
    return out.drop_duplicates(subset=["trade_date"], keep="last").reset_index(drop=True)


def aggregate_bars(bars: pd.DataFrame, period_key: pd.Series) -> pd.DataFrame:
    """
    Roll bars up into one bar per `period_key` group.

    Each output bar is keyed by the last trade_date inside its group, matching
    how the provider dates its weekly and monthly bars.
    """
    if bars.empty:
        return pd.DataFrame(columns=BAR_COLUMNS)
    ordered = bars.assign(_period=period_key.values).sort_values("trade_date", kind="stable")
    grouped = ordered.groupby("_period", sort=True)
    out = pd.DataFrame(
        {
            "ts_code": grouped["ts_code"].last(),
            "trade_date": grouped["trade_date"].last(),
            "open": grouped["open"].first(),
            "high": grouped["high"].max(),
            "low": grouped["low"].min(),
            "close": grouped["close"].last(),
            "vol": grouped["vol"].sum(),
            "amount": grouped["amount"].sum(),
        }
    )
    return out.reset_index(drop=True)[BAR_COLUMNS]


class TushareCollector:
    """K-lines, stock universe and per-stock reports from Tushare Pro."""

    def __init__(self, client: TushareClient, *, chunk_years: int = 10) -> None:
        self.client = client
        self.chunk_years = int(chunk_years)

    def _bars(self, api: str, entity_id: str, start: _dt.date, end: _dt.date, ctx: Context | None) -> pd.DataFrame:
        frames = []
        for ws, we in span_windows(start, end, years=self.chunk_years):
            df = self.client.query(
                api,
                ctx=ctx,
                ts_code=entity_id,
                start_date=fmt_yyyymmdd(ws),
                end_date=fmt_yyyymmdd(we),
                fields=BAR_FIELDS,
            )
            if df is not None and not df.empty:
                frames.append(df)
        if not frames:
            return normalize_bars(None, entity_id)
        return normalize_bars(pd.concat(frames, ignore_index=True), entity_id)

    def _yearly(self, entity_id: str, start: _dt.date, end: _dt.date, ctx: Context | None) -> pd.DataFrame:
        # Whole years of monthly bars so the first aggregated year is complete.
        monthly = self._bars("monthly", entity_id, _dt.date(start.year, 1, 1), end, ctx)
        if monthly.empty:
            return monthly
        return aggregate_bars(monthly, monthly["trade_date"].str[:4])

    def fetch(self, entity_id: str, window: SyncWindow, *, ctx: Context | None = None) -> pd.DataFrame:
        if window.start_date > window.end_date:
            return normalize_bars(None, entity_id)
        if window.granularity is Granularity.YEARLY:
            return self._yearly(entity_id, window.start_date, window.end_date, ctx)
        return self._bars(_BAR_APIS[window.granularity], entity_id, window.start_date, window.end_date, ctx)

    def fetch_current_period(
        self,
        entity_id: str,
        granularity: Granularity,
        clock: MarketClock,
        *,
        ctx: Context | None = None,
    ) -> pd.DataFrame:
        """Snapshot bar of the open period, built from its daily bars (at most one row)."""
        g = Granularity.parse(granularity)
        start = PERIOD_RULES[g].period_start(clock.today)
        daily = self._bars("daily", entity_id, start, clock.today, ctx)
        if daily.empty or g is Granularity.DAILY:
            return daily.tail(1).reset_index(drop=True)
        return aggregate_bars(daily, pd.Series(["current"] * len(daily)))

    def fetch_entities(self, *, ctx: Context | None = None) -> pd.DataFrame:
        frames = []
        for status in ("L", "D", "P"):
            df = self.client.query("stock_basic", ctx=ctx, exchange="", list_status=status, fields=STOCK_FIELDS)
            if df is None or df.empty:
                continue
            if "list_status" not in df.columns:
                df = df.assign(list_status=status)
            frames.append(df)
        if not frames:
            return pd.DataFrame(columns=STOCK_FIELDS.split(","))
        out = pd.concat(frames, ignore_index=True)
        if "ts_code" not in out.columns:
            raise ParseError(f"stock_basic payload has no ts_code column (got {list(out.columns)})")
        logger.debug("collector: stock_basic rows=%d", len(out))
        return out

    def fetch_performance(self, entity_id: str, *, ctx: Context | None = None) -> pd.DataFrame:
        return self.client.query("fina_indicator", ctx=ctx, ts_code=entity_id, fields=PERFORMANCE_FIELDS)

    def fetch_shareholders(self, entity_id: str, *, ctx: Context | None = None) -> pd.DataFrame:
        return self.client.query("stk_holdernumber", ctx=ctx, ts_code=entity_id, fields=SHAREHOLDER_FIELDS)

    def fetch_trade_cal(self, start: _dt.date, end: _dt.date, *, exchange: str = "SSE") -> pd.DataFrame:
        return self.client.query_all(
            "trade_cal",
            exchange=exchange,
            start_date=fmt_yyyymmdd(start),
            end_date=fmt_yyyymmdd(end),
            fields="cal_date,is_open",
        )
