"""Configuration for kline_sync.

Controls the store location, provider access, the trading calendar, the
notifier, and per-job execution settings (concurrency, timeouts, retries,
cron schedule).

Configuration is loaded from a YAML file (default: kline_sync.yaml in the
current directory or in the store directory). The loaded object is passed
explicitly to whatever needs it.
"""

from __future__ import annotations

import datetime as _dt
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from kline_sync.trading_calendar import DEFAULT_HOLIDAYS, HolidayWindow, TradingCalendar
from kline_sync.utils_dates import coerce_date


KLINE_JOBS = ("kline_daily", "kline_weekly", "kline_monthly", "kline_yearly")
NIGHTLY_ORDER = KLINE_JOBS + ("performance", "shareholder")
JOB_NAMES = ("stock_list",) + NIGHTLY_ORDER + ("nightly",)


@dataclass(frozen=True)
class JobConfig:
    """Execution settings for one job; every run gets its own executor sized from these."""

    enabled: bool = True
    concurrency: int = 100
    # Seconds per task; the executor abandons (and reports) tasks that overrun.
    task_timeout: float = 1800.0
    # Seconds for the whole batch, None for no bound.
    batch_timeout: float | None = None
    max_retries: int = 2
    retry_delay: float = 5.0
    # Skip the run entirely on non-trading days.
    trading_days_only: bool = False
    show_progress: bool = True
    # 5-field crontab expression; None means the job only runs on demand or inside `nightly`.
    cron: str | None = None


DEFAULT_JOB_CONFIGS: dict[str, JobConfig] = {
    "stock_list": JobConfig(concurrency=1, cron="0 8 * * *"),
    "kline_daily": JobConfig(),
    "kline_weekly": JobConfig(),
    "kline_monthly": JobConfig(),
    "kline_yearly": JobConfig(),
    "performance": JobConfig(),
    "shareholder": JobConfig(concurrency=50, task_timeout=2700.0),
    "nightly": JobConfig(cron="0 22 * * *"),
}


@dataclass(frozen=True)
class CalendarConfig:
    # "rules" uses holiday windows only; "tushare" loads the exchange trade_cal at startup.
    source: str = "rules"
    timezone: str = "Asia/Shanghai"
    session_close: _dt.time = _dt.time(15, 0)
    holidays: tuple[HolidayWindow, ...] = DEFAULT_HOLIDAYS
    closed_dates: tuple[_dt.date, ...] = ()

    def build(self, **kwargs) -> TradingCalendar:
        return TradingCalendar(
            self.holidays,
            closed_dates=self.closed_dates,
            session_close=self.session_close,
            timezone=self.timezone,
            **kwargs,
        )


@dataclass(frozen=True)
class NotifierConfig:
    # "log", "dingtalk" or "wework"
    kind: str = "log"
    webhook: str = ""
    secret: str = ""
    timeout: float = 30.0


@dataclass(frozen=True)
class AppConfig:
    """Application-wide configuration."""

    store_dir: str = "store"
    tushare_token: str | None = None
    rpm: int = 500
    # Years per provider request when fetching long bar histories.
    chunk_years: int = 10

    epoch: _dt.date = _dt.date(1990, 1, 1)
    stale_after_days: int = 30

    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    notifier: NotifierConfig = field(default_factory=NotifierConfig)
    jobs: dict[str, JobConfig] = field(default_factory=lambda: dict(DEFAULT_JOB_CONFIGS))

    @property
    def duckdb_path(self) -> str:
        return os.path.join(self.store_dir, "duckdb", "kline.duckdb")

    def job(self, name: str) -> JobConfig:
        if name not in JOB_NAMES:
            raise ValueError(f"Unknown job: {name!r} (expected one of {list(JOB_NAMES)})")
        return self.jobs.get(name) or DEFAULT_JOB_CONFIGS[name]

    def resolve_token(self) -> str | None:
        return self.tushare_token or os.environ.get("TUSHARE_TOKEN") or None


def _parse_time(value: Any) -> _dt.time:
    if isinstance(value, _dt.time):
        return value
    if isinstance(value, int):
        # YAML 1.1 reads unquoted 15:00 as sexagesimal minutes.
        return _dt.time(value // 60, value % 60)
    try:
        hh, mm = str(value).strip().split(":")
        return _dt.time(int(hh), int(mm))
    except ValueError:
        raise ValueError(f"Invalid time {value!r} (expected HH:MM)") from None


def _parse_job_config(name: str, data: dict[str, Any] | bool | None) -> JobConfig:
    base = DEFAULT_JOB_CONFIGS[name]
    if data is None:
        return base
    if isinstance(data, bool):
        # Shorthand: `performance: false` disables the job.
        return replace(base, enabled=data)
    if not isinstance(data, dict):
        raise ValueError(f"jobs.{name} must be a mapping or a boolean")

    unknown = set(data) - set(JobConfig.__dataclass_fields__)
    if unknown:
        raise ValueError(f"Unknown keys for jobs.{name}: {sorted(unknown)}")

    batch_timeout = data.get("batch_timeout", base.batch_timeout)
    return JobConfig(
        enabled=bool(data.get("enabled", base.enabled)),
        concurrency=int(data.get("concurrency", base.concurrency)),
        task_timeout=float(data.get("task_timeout", base.task_timeout)),
        batch_timeout=None if batch_timeout is None else float(batch_timeout),
        max_retries=int(data.get("max_retries", base.max_retries)),
        retry_delay=float(data.get("retry_delay", base.retry_delay)),
        trading_days_only=bool(data.get("trading_days_only", base.trading_days_only)),
        show_progress=bool(data.get("show_progress", base.show_progress)),
        cron=data.get("cron", base.cron),
    )


def _parse_calendar_config(data: dict[str, Any] | None) -> CalendarConfig:
    data = data or {}
    source = str(data.get("source", "rules")).lower()
    if source not in {"rules", "tushare"}:
        raise ValueError(f"calendar.source must be 'rules' or 'tushare', got {source!r}")

    holidays = DEFAULT_HOLIDAYS
    if "holidays" in data:
        holidays = tuple(HolidayWindow.parse(str(k), str(v)) for k, v in (data.get("holidays") or {}).items())

    return CalendarConfig(
        source=source,
        timezone=str(data.get("timezone", "Asia/Shanghai")),
        session_close=_parse_time(data.get("session_close", "15:00")),
        holidays=holidays,
        closed_dates=tuple(coerce_date(d) for d in (data.get("closed_dates") or [])),
    )


def _parse_notifier_config(data: dict[str, Any] | None) -> NotifierConfig:
    data = data or {}
    return NotifierConfig(
        kind=str(data.get("kind", "log")).lower(),
        webhook=str(data.get("webhook", "") or ""),
        secret=str(data.get("secret", "") or ""),
        timeout=float(data.get("timeout", 30.0)),
    )


def load_config(config_path: str | Path | None = None, store_dir: str | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Search order:
    1. Explicit config_path if provided
    2. KLINE_SYNC_CONFIG env var
    3. kline_sync.yaml / kline_sync.yml in current directory
    4. kline_sync.yaml / kline_sync.yml in store directory (if provided)
    5. Default config
    """
    # An explicit config_path is authoritative: a missing file means defaults,
    # never a fallback to some other kline_sync.yaml lying around.
    if config_path:
        p = Path(config_path)
        if not p.exists():
            return AppConfig(store_dir=store_dir or "store")
        search_paths: list[Path] = [p]
    else:
        search_paths = []

    env_path = os.environ.get("KLINE_SYNC_CONFIG")
    if env_path:
        search_paths.append(Path(env_path))

    search_paths.append(Path("kline_sync.yaml"))
    search_paths.append(Path("kline_sync.yml"))

    if store_dir:
        search_paths.append(Path(store_dir) / "kline_sync.yaml")
        search_paths.append(Path(store_dir) / "kline_sync.yml")

    config_file: Path | None = None
    for p in search_paths:
        if p.exists():
            config_file = p
            break

    if config_file is None:
        return AppConfig(store_dir=store_dir or "store")

    with open(config_file, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    return parse_config_data(data, default_store_dir=store_dir)


def parse_config_data(data: dict[str, Any], default_store_dir: str | None = None) -> AppConfig:
    """Parse configuration data from a dict (usually loaded from YAML)."""
    tushare = data.get("tushare") or {}
    sync = data.get("sync") or {}

    jobs_data = data.get("jobs") or {}
    unknown = set(jobs_data) - set(JOB_NAMES)
    if unknown:
        raise ValueError(f"Unknown jobs in config: {sorted(unknown)} (expected names from {list(JOB_NAMES)})")
    jobs = {name: _parse_job_config(name, jobs_data.get(name)) for name in JOB_NAMES}

    return AppConfig(
        store_dir=str(data.get("store_dir", default_store_dir or "store")),
        tushare_token=tushare.get("token") or None,
        rpm=int(tushare.get("rpm", 500)),
        chunk_years=int(tushare.get("chunk_years", 10)),
        epoch=coerce_date(sync.get("epoch", "1990-01-01")),
        stale_after_days=int(sync.get("stale_after_days", 30)),
        calendar=_parse_calendar_config(data.get("calendar")),
        notifier=_parse_notifier_config(data.get("notifier")),
        jobs=jobs,
    )
