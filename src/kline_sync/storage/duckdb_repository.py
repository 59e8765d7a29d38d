from __future__ import annotations

import contextlib
import datetime as _dt
import logging
import os
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pandas as pd

from kline_sync.models import Entity, Granularity, LatestRecord
from kline_sync.utils_dates import coerce_date

if TYPE_CHECKING:
    from kline_sync.stats import JobReport


logger = logging.getLogger(__name__)


KLINE_COLUMNS = ["ts_code", "trade_date", "open", "high", "low", "close", "vol", "amount"]

# table -> (key columns, value columns)
REPORT_TABLES: dict[str, tuple[list[str], list[str]]] = {
    "performance_reports": (
        ["ts_code", "end_date"],
        ["ann_date", "eps", "bps", "roe", "netprofit_yoy", "or_yoy", "grossprofit_margin"],
    ),
    "shareholder_counts": (
        ["ts_code", "end_date"],
        ["ann_date", "holder_num"],
    ),
}


def _date_key(value) -> int:
    return int(coerce_date(value).strftime("%Y%m%d"))


def _select_columns(df: pd.DataFrame, columns: list[str]) -> pd.DataFrame:
    out = df.copy()
    for c in columns:
        if c not in out.columns:
            out[c] = None
    return out[columns]


@dataclass
class DuckDBRepository:
    """
    K-line, entity and report storage in a single DuckDB file.

    Every write is an upsert keyed by (ts_code, period date), so replays of the
    same window are harmless.
    """

    duckdb_path: str

    def __post_init__(self) -> None:
        # DuckDB file handles can conflict under heavy concurrent connect/close.
        # Reuse a single connection and serialize access with a lock.
        self._lock = threading.RLock()
        self._con = None

    @contextlib.contextmanager
    def connect(self):
        # Import lazily.
        import duckdb

        with self._lock:
            if self._con is None:
                parent = os.path.dirname(self.duckdb_path)
                if parent:
                    os.makedirs(parent, exist_ok=True)
                self._con = duckdb.connect(self.duckdb_path)
            yield self._con

    def close(self) -> None:
        with self._lock:
            if self._con is not None:
                try:
                    self._con.close()
                finally:
                    self._con = None

    def ensure_schema(self) -> None:
        with self.connect() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS stocks (
                  ts_code VARCHAR PRIMARY KEY,
                  name VARCHAR,
                  list_date VARCHAR,
                  is_active BOOLEAN,
                  updated_at TIMESTAMP
                );
                """
            )
            for g in Granularity:
                con.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {g.table} (
                      ts_code VARCHAR,
                      trade_date INTEGER,
                      open DOUBLE,
                      high DOUBLE,
                      low DOUBLE,
                      close DOUBLE,
                      vol DOUBLE,
                      amount DOUBLE,
                      updated_at TIMESTAMP,
                      PRIMARY KEY (ts_code, trade_date)
                    );
                    """
                )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS performance_reports (
                  ts_code VARCHAR,
                  end_date INTEGER,
                  ann_date VARCHAR,
                  eps DOUBLE,
                  bps DOUBLE,
                  roe DOUBLE,
                  netprofit_yoy DOUBLE,
                  or_yoy DOUBLE,
                  grossprofit_margin DOUBLE,
                  updated_at TIMESTAMP,
                  PRIMARY KEY (ts_code, end_date)
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS shareholder_counts (
                  ts_code VARCHAR,
                  end_date INTEGER,
                  ann_date VARCHAR,
                  holder_num BIGINT,
                  updated_at TIMESTAMP,
                  PRIMARY KEY (ts_code, end_date)
                );
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS job_runs (
                  job VARCHAR,
                  started_at TIMESTAMP,
                  finished_at TIMESTAMP,
                  entities INTEGER,
                  total_tasks INTEGER,
                  success_tasks INTEGER,
                  failed_tasks INTEGER,
                  timed_out_tasks INTEGER,
                  cancelled_tasks INTEGER,
                  fatal_error VARCHAR
                );
                """
            )

    # -- k-lines -------------------------------------------------------------------

    def get_latest(self, entity_id: str, granularity: Granularity) -> LatestRecord | None:
        g = Granularity.parse(granularity)
        with self.connect() as con:
            row = con.execute(
                f"SELECT trade_date, updated_at FROM {g.table} WHERE ts_code = ? ORDER BY trade_date DESC LIMIT 1;",
                [entity_id],
            ).fetchone()
        if not row:
            return None
        return LatestRecord(entity_id=entity_id, granularity=g, last_period_date=row[0], updated_at=row[1])

    def delete(self, entity_id: str, period_date, granularity: Granularity) -> int:
        g = Granularity.parse(granularity)
        key = _date_key(period_date)
        with self.connect() as con:
            before = con.execute(
                f"SELECT COUNT(*) FROM {g.table} WHERE ts_code = ? AND trade_date = ?;", [entity_id, key]
            ).fetchone()[0]
            con.execute(f"DELETE FROM {g.table} WHERE ts_code = ? AND trade_date = ?;", [entity_id, key])
        logger.debug("repository: deleted %s %s trade_date=%d rows=%d", g.value, entity_id, key, int(before))
        return int(before)

    def upsert_batch(self, granularity: Granularity, rows: pd.DataFrame) -> int:
        g = Granularity.parse(granularity)
        if rows is None or rows.empty:
            return 0
        df = _select_columns(rows, KLINE_COLUMNS)
        df["trade_date"] = [_date_key(v) for v in df["trade_date"]]
        df["ts_code"] = df["ts_code"].astype(str)
        # ON CONFLICT cannot touch the same key twice in one statement.
        df = df.drop_duplicates(subset=["ts_code", "trade_date"], keep="last").reset_index(drop=True)
        # Naive UTC; the sync policy compares it against the session close.
        df["updated_at"] = _naive_utc(_dt.datetime.now(_dt.timezone.utc))
        value_cols = [c for c in KLINE_COLUMNS if c not in {"ts_code", "trade_date"}]
        sets = ", ".join(f"{c} = excluded.{c}" for c in value_cols + ["updated_at"])
        with self.connect() as con:
            con.register("incoming_rows", df)
            try:
                con.execute(
                    f"""
                    INSERT INTO {g.table} ({", ".join(KLINE_COLUMNS)}, updated_at)
                    SELECT {", ".join(KLINE_COLUMNS)}, updated_at FROM incoming_rows
                    ON CONFLICT (ts_code, trade_date) DO UPDATE SET {sets};
                    """
                )
            finally:
                con.unregister("incoming_rows")
        return int(len(df))

    def count_rows(self, granularity: Granularity, entity_id: str | None = None) -> int:
        g = Granularity.parse(granularity)
        with self.connect() as con:
            if entity_id is None:
                row = con.execute(f"SELECT COUNT(*) FROM {g.table};").fetchone()
            else:
                row = con.execute(f"SELECT COUNT(*) FROM {g.table} WHERE ts_code = ?;", [entity_id]).fetchone()
        return int(row[0])

    def read_klines(self, granularity: Granularity, entity_id: str) -> pd.DataFrame:
        g = Granularity.parse(granularity)
        with self.connect() as con:
            return con.execute(
                f"SELECT {', '.join(KLINE_COLUMNS)} FROM {g.table} WHERE ts_code = ? ORDER BY trade_date;",
                [entity_id],
            ).fetchdf()

    # -- entities ------------------------------------------------------------------

    def update_status(self, entity_id: str, active: bool) -> None:
        with self.connect() as con:
            con.execute(
                "UPDATE stocks SET is_active = ?, updated_at = NOW() WHERE ts_code = ?;",
                [bool(active), entity_id],
            )

    def list_entities(self, *, active_only: bool = False) -> list[Entity]:
        sql = "SELECT ts_code, name, list_date, is_active FROM stocks"
        if active_only:
            sql += " WHERE is_active"
        with self.connect() as con:
            rows = con.execute(sql + " ORDER BY ts_code;").fetchall()
        return [Entity(ts_code=r[0], name=r[1] or "", list_date=r[2], is_active=bool(r[3])) for r in rows]

    def upsert_entities(self, rows: pd.DataFrame) -> int:
        """Upsert the stock universe; `list_status` 'D' (delisted) marks a code inactive."""
        if rows is None or rows.empty:
            return 0
        df = _select_columns(rows, ["ts_code", "name", "list_date", "list_status"])
        df = df.dropna(subset=["ts_code"]).drop_duplicates(subset=["ts_code"], keep="first")
        df["is_active"] = df["list_status"].astype(str).str.upper() != "D"
        df = df[["ts_code", "name", "list_date", "is_active"]].reset_index(drop=True)
        with self.connect() as con:
            con.register("incoming_stocks", df)
            try:
                con.execute(
                    """
                    INSERT INTO stocks (ts_code, name, list_date, is_active, updated_at)
                    SELECT ts_code, name, list_date, is_active, NOW() FROM incoming_stocks
                    ON CONFLICT (ts_code) DO UPDATE SET
                      name = excluded.name,
                      list_date = excluded.list_date,
                      is_active = excluded.is_active,
                      updated_at = excluded.updated_at;
                    """
                )
            finally:
                con.unregister("incoming_stocks")
        return int(len(df))

    # -- reports -------------------------------------------------------------------

    def upsert_reports(self, table: str, rows: pd.DataFrame) -> int:
        if table not in REPORT_TABLES:
            raise ValueError(f"Unknown report table: {table}")
        if rows is None or rows.empty:
            return 0
        keys, values = REPORT_TABLES[table]
        df = _select_columns(rows, keys + values)
        df = df.dropna(subset=keys)
        df["end_date"] = [_date_key(v) for v in df["end_date"]]
        if "ann_date" in df.columns:
            df["ann_date"] = df["ann_date"].astype("string")
        df = df.drop_duplicates(subset=keys, keep="last").reset_index(drop=True)
        cols = keys + values
        sets = ", ".join(f"{c} = excluded.{c}" for c in values + ["updated_at"])
        with self.connect() as con:
            con.register("incoming_reports", df)
            try:
                con.execute(
                    f"""
                    INSERT INTO {table} ({", ".join(cols)}, updated_at)
                    SELECT {", ".join(cols)}, NOW() FROM incoming_reports
                    ON CONFLICT ({", ".join(keys)}) DO UPDATE SET {sets};
                    """
                )
            finally:
                con.unregister("incoming_reports")
        return int(len(df))

    # -- job runs ------------------------------------------------------------------

    def record_job_run(self, report: "JobReport") -> None:
        s = report.stats
        with self.connect() as con:
            con.execute(
                """
                INSERT INTO job_runs(job, started_at, finished_at, entities, total_tasks, success_tasks,
                                     failed_tasks, timed_out_tasks, cancelled_tasks, fatal_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    report.job,
                    _naive_utc(report.started_at),
                    _naive_utc(report.finished_at),
                    int(report.entities),
                    s.total_tasks,
                    s.success_tasks,
                    s.failed_tasks,
                    s.timed_out_tasks,
                    s.cancelled_tasks,
                    report.fatal_error,
                ],
            )

    def job_runs(self, *, limit: int = 20) -> pd.DataFrame:
        with self.connect() as con:
            return con.execute(
                "SELECT * FROM job_runs ORDER BY started_at DESC LIMIT ?;",
                [int(limit)],
            ).fetchdf()


def _naive_utc(ts: _dt.datetime | None) -> _dt.datetime | None:
    if ts is None:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(_dt.timezone.utc).replace(tzinfo=None)
    return ts
