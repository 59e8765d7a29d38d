from __future__ import annotations

from pathlib import Path

import pytest

from kline_sync.cli import main


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("KLINE_SYNC_CONFIG", raising=False)
    monkeypatch.delenv("TUSHARE_TOKEN", raising=False)


def test_jobs_lists_every_job(tmp_path: Path, capsys) -> None:
    assert main(["jobs", "--store", str(tmp_path / "store")]) == 0
    out = capsys.readouterr().out
    for name in ("stock_list", "kline_daily", "shareholder", "nightly"):
        assert name in out
    assert "0 22 * * *" in out


def test_plan_without_history_fetches_from_epoch(tmp_path: Path, capsys) -> None:
    rc = main(
        [
            "plan",
            "--store",
            str(tmp_path / "store"),
            "--config",
            str(tmp_path / "missing.yaml"),
            "--ts-code",
            "000001.SZ",
            "--granularity",
            "monthly",
        ]
    )
    assert rc == 0
    out = capsys.readouterr().out
    assert "000001.SZ monthly range_fetch 19900101.." in out
    assert (tmp_path / "store" / "duckdb" / "kline.duckdb").exists()


def test_stat_on_empty_store(tmp_path: Path, capsys) -> None:
    assert main(["stat", "--store", str(tmp_path / "store")]) == 0
    assert "(no job runs recorded)" in capsys.readouterr().out


def test_run_without_token_exits_2(tmp_path: Path, capsys) -> None:
    assert main(["run", "kline_daily", "--store", str(tmp_path / "store")]) == 2
    assert "Missing token" in capsys.readouterr().err


def test_unknown_job_is_rejected_by_parser() -> None:
    with pytest.raises(SystemExit):
        main(["run", "kline_hourly"])
