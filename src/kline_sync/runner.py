from __future__ import annotations

import datetime as _dt
import logging
import os
import signal

from kline_sync.config import AppConfig, load_config
from kline_sync.context import Context
from kline_sync.errors import FatalJobError
from kline_sync.models import Granularity
from kline_sync.trading_calendar import TradingCalendar


logger = logging.getLogger(__name__)


def configure_logging() -> None:
    # Can be overridden via env: KLINE_SYNC_LOG_LEVEL=DEBUG/INFO/WARNING
    level_name = os.environ.get("KLINE_SYNC_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    from rich.logging import RichHandler

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _repository(cfg: AppConfig):
    from kline_sync.storage.duckdb_repository import DuckDBRepository

    repo = DuckDBRepository(cfg.duckdb_path)
    repo.ensure_schema()
    return repo


def _notifier(cfg: AppConfig):
    from kline_sync.notifier import LogNotifier, WebhookNotifier

    n = cfg.notifier
    if n.kind == "log":
        return LogNotifier()
    return WebhookNotifier(webhook=n.webhook, kind=n.kind, secret=n.secret, timeout=n.timeout)


def build_calendar(cfg: AppConfig, collector=None) -> TradingCalendar:
    if cfg.calendar.source != "tushare" or collector is None:
        return cfg.calendar.build()
    today = _dt.date.today()
    try:
        df = collector.fetch_trade_cal(today - _dt.timedelta(days=400), today + _dt.timedelta(days=60))
    except Exception:  # noqa: BLE001
        logger.warning("calendar: trade_cal unavailable, using holiday rules", exc_info=True)
        return cfg.calendar.build()
    cal = cfg.calendar
    return TradingCalendar.from_trade_cal(
        df,
        holidays=cal.holidays,
        closed_dates=cal.closed_dates,
        session_close=cal.session_close,
        timezone=cal.timezone,
    )


def build_orchestrator(cfg: AppConfig, *, token: str):
    """Composition root: wire config into concrete collaborators."""
    from kline_sync.collector import TushareCollector
    from kline_sync.orchestrator import Orchestrator
    from kline_sync.rate_limit import RateLimiter
    from kline_sync.services import Services
    from kline_sync.sync_policy import SyncPolicy
    from kline_sync.tushare_client import TushareClient

    client = TushareClient(token=token, limiter=RateLimiter(rpm=cfg.rpm))
    collector = TushareCollector(client, chunk_years=cfg.chunk_years)
    repository = _repository(cfg)
    calendar = build_calendar(cfg, collector)
    policy = SyncPolicy(repository, calendar, epoch=cfg.epoch, stale_after_days=cfg.stale_after_days)
    services = Services(
        repository=repository,
        collector=collector,
        calendar=calendar,
        policy=policy,
        notifier=_notifier(cfg),
    )
    return Orchestrator(cfg, services)


def _print_reports(reports) -> None:
    for r in reports:
        print(r.summary())
        print("")


def _serve(orchestrator, cfg: AppConfig) -> int:
    from kline_sync.scheduler import CronScheduler

    scheduler = CronScheduler(timezone=cfg.calendar.timezone)
    schedule = orchestrator.build_schedule()
    if not schedule:
        print("serve: no scheduled jobs (set jobs.<name>.cron in config)")
        return 1
    for job in schedule:
        scheduler.add(job)

    def _stop(signum, _frame) -> None:
        logger.info("serve: received signal %d, shutting down", signum)
        scheduler.shutdown()

    signal.signal(signal.SIGTERM, _stop)
    scheduler.start()
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        scheduler.shutdown()
    return 0


def _print_jobs(cfg: AppConfig) -> None:
    from kline_sync.config import JOB_NAMES

    header = f"{'job':<14} {'enabled':<7} {'cron':<14} {'conc':>5} {'timeout':>8} {'batch':>8} {'retries':>7}"
    print(header)
    print("-" * len(header))
    for name in JOB_NAMES:
        j = cfg.job(name)
        batch = "-" if j.batch_timeout is None else f"{j.batch_timeout:.0f}s"
        print(
            f"{name:<14} "
            f"{str(j.enabled).lower():<7} "
            f"{(j.cron or '-'):<14} "
            f"{j.concurrency:>5} "
            f"{j.task_timeout:>7.0f}s "
            f"{batch:>8} "
            f"{j.max_retries:>7}"
        )


def run_command(args, *, token: str | None) -> int:
    configure_logging()

    cfg = load_config(getattr(args, "config", None), store_dir=args.store)

    if args.cmd == "jobs":
        _print_jobs(cfg)
        return 0

    if args.cmd == "stat":
        from kline_sync.stats import print_job_runs

        repo = _repository(cfg)
        try:
            print_job_runs(repo.job_runs(limit=int(args.limit)))
        finally:
            repo.close()
        return 0

    if args.cmd == "plan":
        from kline_sync.sync_policy import SyncPolicy

        repo = _repository(cfg)
        try:
            calendar = cfg.calendar.build()
            policy = SyncPolicy(repo, calendar, epoch=cfg.epoch, stale_after_days=cfg.stale_after_days)
            clock = calendar.clock()
            for g in args.granularity:
                print(policy.plan(args.ts_code, Granularity.parse(g), clock).describe())
        finally:
            repo.close()
        return 0

    if not token:
        raise ValueError("Missing token: set env TUSHARE_TOKEN, tushare.token in config, or pass --token")

    orchestrator = build_orchestrator(cfg, token=token)
    try:
        if args.cmd == "serve":
            return _serve(orchestrator, cfg)

        job = "nightly" if args.cmd == "nightly" else args.job
        ctx = Context.background()
        try:
            reports = orchestrator.run_job(job, ctx)
        except FatalJobError as e:
            print(f"{job}: aborted: {e}")
            return 1
        if args.output:
            from kline_sync.stats import write_report_json_file

            write_report_json_file(reports, args.output)
            print(f"Wrote report JSON to {args.output}")
        else:
            _print_reports(reports)
        return 0
    finally:
        orchestrator.services.repository.close()
