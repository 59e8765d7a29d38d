from __future__ import annotations

import argparse
import sys


RUNNABLE_JOBS = [
    "stock_list",
    "kline_daily",
    "kline_weekly",
    "kline_monthly",
    "kline_yearly",
    "performance",
    "shareholder",
    "nightly",
]


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="kline-sync", description="Incremental K-line sync for A-share stocks")
    sub = p.add_subparsers(dest="cmd", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--store", default="store", help="Base storage directory (default: store)")
    common.add_argument("--config", default=None, help="Path to kline_sync.yaml (default: search CWD, then store)")

    run = sub.add_parser("run", parents=[common], help="Run one job now")
    run.add_argument("job", choices=RUNNABLE_JOBS, help="Job name")
    run.add_argument("--output", default=None, help="Write the job report as JSON to this path")

    nightly = sub.add_parser(
        "nightly",
        parents=[common],
        help="Run daily, weekly, monthly, yearly k-lines, then performance and shareholder",
    )
    nightly.add_argument("--output", default=None, help="Write the job reports as JSON to this path")

    sub.add_parser("serve", parents=[common], help="Run scheduled jobs until interrupted")
    sub.add_parser("jobs", parents=[common], help="List jobs with their schedule and execution settings")

    plan = sub.add_parser("plan", parents=[common], help="Show the sync window for one stock")
    plan.add_argument("--ts-code", required=True, help="Tushare code, e.g. 000001.SZ")
    plan.add_argument(
        "--granularity",
        nargs="+",
        default=["daily", "weekly", "monthly", "yearly"],
        choices=["daily", "weekly", "monthly", "yearly"],
        help="Granularities to plan (default: all)",
    )

    stat = sub.add_parser("stat", parents=[common], help="Show recent job runs")
    stat.add_argument("--limit", type=int, default=20, help="Number of runs to show (default: 20)")

    p.add_argument(
        "--token",
        default=None,
        help="Tushare token (default: tushare.token in config, then env TUSHARE_TOKEN)",
    )

    return p


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    # Import lazily so `kline-sync --help` works without heavy deps installed.
    from kline_sync.config import load_config
    from kline_sync.runner import run_command

    token = args.token
    if args.cmd in {"run", "nightly", "serve"} and not token:
        token = load_config(args.config, store_dir=args.store).resolve_token()
        if not token:
            print("Missing token: set env TUSHARE_TOKEN, tushare.token in config, or pass --token", file=sys.stderr)
            return 2

    return run_command(args, token=token)


if __name__ == "__main__":
    raise SystemExit(main())
