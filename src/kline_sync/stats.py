from __future__ import annotations

import datetime as _dt
import json
import os
import time
from dataclasses import dataclass
from typing import Any

import pandas as pd

from kline_sync.tasks import ExecutionStats


def _fmt_seconds(td: _dt.timedelta) -> str:
    return f"{td.total_seconds():.2f}s"


@dataclass(frozen=True)
class JobReport:
    job: str
    started_at: _dt.datetime
    finished_at: _dt.datetime
    entities: int
    skipped_inactive: int
    stats: ExecutionStats
    fatal_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.fatal_error is None

    def summary(self) -> str:
        """Plain-text report for chat robots and logs."""
        if not self.ok:
            return (
                f"[kline-sync] {self.job} FAILED\n"
                f"started: {self.started_at:%Y-%m-%d %H:%M:%S}\n"
                f"error: {self.fatal_error}"
            )
        s = self.stats
        lines = [
            f"[kline-sync] {self.job} finished",
            f"started: {self.started_at:%Y-%m-%d %H:%M:%S}, elapsed: {_fmt_seconds(self.finished_at - self.started_at)}",
            f"entities: {self.entities} (skipped inactive: {self.skipped_inactive})",
            f"tasks: total={s.total_tasks} success={s.success_tasks} failed={s.failed_tasks} "
            f"timed_out={s.timed_out_tasks} cancelled={s.cancelled_tasks}",
        ]
        if s.total_tasks:
            lines.append(
                f"task duration: avg={_fmt_seconds(s.average_duration)} "
                f"min={_fmt_seconds(s.min_duration)} max={_fmt_seconds(s.max_duration)}"
            )
        return "\n".join(lines)

    def as_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "entities": self.entities,
            "skipped_inactive": self.skipped_inactive,
            "fatal_error": self.fatal_error,
            "stats": self.stats.as_dict(),
        }


def write_report_json_file(reports: list[JobReport], path: str) -> None:
    payload: dict[str, Any] = {
        "jobs": [r.as_dict() for r in reports],
        "count": len(reports),
        "generated_at": int(time.time()),
    }
    d = os.path.dirname(path)
    if d:
        os.makedirs(d, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def print_job_runs(runs: pd.DataFrame) -> None:
    header = (
        f"{'job':<14} {'started':<19} {'elapsed':>9} {'entities':>8} "
        f"{'success':>8} {'failed':>7} {'timeout':>7} {'cancel':>7}  error"
    )
    print(header)
    print("-" * len(header))
    if runs is None or runs.empty:
        print("(no job runs recorded)")
        return

    for r in runs.itertuples(index=False):
        started = pd.Timestamp(r.started_at)
        elapsed = "-"
        if r.finished_at is not None and not pd.isna(r.finished_at):
            elapsed = f"{(pd.Timestamp(r.finished_at) - started).total_seconds():.1f}s"
        err = "" if r.fatal_error is None or pd.isna(r.fatal_error) else str(r.fatal_error)
        print(
            f"{r.job:<14} "
            f"{started:%Y-%m-%d %H:%M:%S} "
            f"{elapsed:>9} "
            f"{int(r.entities):>8} "
            f"{int(r.success_tasks):>8} "
            f"{int(r.failed_tasks):>7} "
            f"{int(r.timed_out_tasks):>7} "
            f"{int(r.cancelled_tasks):>7}  "
            f"{err}"
        )
