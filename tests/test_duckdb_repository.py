from __future__ import annotations

import datetime as _dt
from pathlib import Path

import pandas as pd
import pytest

from kline_sync.models import Granularity
from kline_sync.stats import JobReport
from kline_sync.storage.duckdb_repository import DuckDBRepository
from kline_sync.tasks import ExecutionStats


@pytest.fixture
def repo(tmp_path: Path):
    r = DuckDBRepository(str(tmp_path / "duckdb" / "kline.duckdb"))
    r.ensure_schema()
    yield r
    r.close()


def _bars(ts_code: str, dates: list[str], close: float = 10.0) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "ts_code": ts_code,
                "trade_date": d,
                "open": close,
                "high": close + 1,
                "low": close - 1,
                "close": close,
                "vol": 100.0,
                "amount": 1000.0,
                "pct_chg": 0.5,  # extra provider columns are dropped
            }
            for d in dates
        ]
    )


def test_get_latest_returns_newest_period(repo: DuckDBRepository) -> None:
    assert repo.get_latest("000001.SZ", Granularity.DAILY) is None

    repo.upsert_batch(Granularity.DAILY, _bars("000001.SZ", ["20240103", "20240105", "20240104"]))
    latest = repo.get_latest("000001.SZ", Granularity.DAILY)

    assert latest is not None
    assert latest.last_period_date == 20240105
    assert latest.granularity is Granularity.DAILY
    assert latest.updated_at is not None
    # Other granularities are separate tables.
    assert repo.get_latest("000001.SZ", Granularity.WEEKLY) is None


def test_upsert_stamps_naive_utc_write_time(repo: DuckDBRepository) -> None:
    before = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)
    repo.upsert_batch(Granularity.DAILY, _bars("000001.SZ", ["20240110"]))
    after = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)

    written = repo.get_latest("000001.SZ", Granularity.DAILY).updated_at
    assert written.tzinfo is None
    assert before - _dt.timedelta(seconds=1) <= written <= after + _dt.timedelta(seconds=1)


def test_upsert_is_idempotent_and_overwrites_values(repo: DuckDBRepository) -> None:
    repo.upsert_batch(Granularity.WEEKLY, _bars("000001.SZ", ["20240105", "20240112"], close=10.0))
    repo.upsert_batch(Granularity.WEEKLY, _bars("000001.SZ", ["20240112"], close=12.5))

    df = repo.read_klines(Granularity.WEEKLY, "000001.SZ")
    assert df["trade_date"].tolist() == [20240105, 20240112]
    assert df["close"].tolist() == [10.0, 12.5]


def test_upsert_tolerates_duplicate_keys_in_one_batch(repo: DuckDBRepository) -> None:
    df = pd.concat([_bars("000001.SZ", ["20240105"], 10.0), _bars("000001.SZ", ["2024-01-05"], 11.0)])
    assert repo.upsert_batch(Granularity.DAILY, df) == 1
    assert repo.read_klines(Granularity.DAILY, "000001.SZ")["close"].tolist() == [11.0]


def test_delete_removes_exact_key_only(repo: DuckDBRepository) -> None:
    repo.upsert_batch(Granularity.MONTHLY, _bars("000001.SZ", ["20231229", "20240131"]))
    repo.upsert_batch(Granularity.MONTHLY, _bars("000002.SZ", ["20240131"]))

    assert repo.delete("000001.SZ", _dt.date(2024, 1, 31), Granularity.MONTHLY) == 1

    assert repo.count_rows(Granularity.MONTHLY, "000001.SZ") == 1
    assert repo.count_rows(Granularity.MONTHLY, "000002.SZ") == 1
    assert repo.get_latest("000001.SZ", Granularity.MONTHLY).last_period_date == 20231229


def test_empty_upsert_is_a_noop(repo: DuckDBRepository) -> None:
    assert repo.upsert_batch(Granularity.DAILY, pd.DataFrame()) == 0
    assert repo.count_rows(Granularity.DAILY) == 0


def test_entities_and_status(repo: DuckDBRepository) -> None:
    stocks = pd.DataFrame(
        [
            {"ts_code": "000001.SZ", "name": "PAB", "list_date": "19910403", "list_status": "L"},
            {"ts_code": "000003.SZ", "name": "GONE", "list_date": "19910114", "list_status": "D"},
            {"ts_code": "600000.SH", "name": "SPDB", "list_date": "19991110", "list_status": "P"},
        ]
    )
    assert repo.upsert_entities(stocks) == 3

    assert [e.ts_code for e in repo.list_entities()] == ["000001.SZ", "000003.SZ", "600000.SH"]
    assert [e.ts_code for e in repo.list_entities(active_only=True)] == ["000001.SZ", "600000.SH"]

    repo.update_status("600000.SH", active=False)
    assert [e.ts_code for e in repo.list_entities(active_only=True)] == ["000001.SZ"]

    # A fresh listing refresh restores the exchange's view.
    repo.upsert_entities(stocks)
    assert [e.ts_code for e in repo.list_entities(active_only=True)] == ["000001.SZ", "600000.SH"]


def test_upsert_reports_keyed_by_end_date(repo: DuckDBRepository) -> None:
    rows = pd.DataFrame(
        [
            {"ts_code": "000001.SZ", "ann_date": "20240320", "end_date": "20231231", "eps": 2.1, "roe": 10.0},
            {"ts_code": "000001.SZ", "ann_date": "20231025", "end_date": "20230930", "eps": 1.6, "roe": 8.0},
        ]
    )
    assert repo.upsert_reports("performance_reports", rows) == 2
    assert repo.upsert_reports("performance_reports", rows.assign(eps=[2.2, 1.6])) == 2

    with repo.connect() as con:
        out = con.execute(
            "SELECT end_date, eps FROM performance_reports WHERE ts_code = '000001.SZ' ORDER BY end_date"
        ).fetchall()
    assert out == [(20230930, 1.6), (20231231, 2.2)]


def test_upsert_reports_rejects_unknown_table(repo: DuckDBRepository) -> None:
    with pytest.raises(ValueError):
        repo.upsert_reports("stocks", pd.DataFrame([{"ts_code": "x", "end_date": "20240101"}]))


def test_job_runs_round_trip(repo: DuckDBRepository) -> None:
    start = _dt.datetime(2024, 1, 10, 14, 0, tzinfo=_dt.timezone.utc)
    report = JobReport(
        job="kline_daily",
        started_at=start,
        finished_at=start + _dt.timedelta(minutes=3),
        entities=5000,
        skipped_inactive=0,
        stats=ExecutionStats.empty(start),
    )
    repo.record_job_run(report)

    runs = repo.job_runs(limit=5)
    assert runs["job"].tolist() == ["kline_daily"]
    assert int(runs["entities"].iloc[0]) == 5000
