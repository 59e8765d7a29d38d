#!/usr/bin/env python3
"""Demo: the batch engine on its own, without Tushare or DuckDB.

Runs N fake tasks with random latency through a TaskExecutor, some of which
fail or overrun the per-task timeout, and prints the batch statistics.

Usage:
    python demos/executor_demo.py [tasks] [concurrency]

Examples:
    python demos/executor_demo.py
    python demos/executor_demo.py 200 16
"""
from __future__ import annotations

import random
import sys

from kline_sync import Context, Task, TaskExecutor


def _operation(i: int):
    def run(ctx: Context) -> None:
        latency = random.uniform(0.05, 0.6)
        if not ctx.wait(latency):
            ctx.check()
        if i % 13 == 0:
            raise RuntimeError(f"simulated failure for task {i}")

    return run


def main() -> int:
    n = int(sys.argv[1]) if len(sys.argv) >= 2 else 50
    concurrency = int(sys.argv[2]) if len(sys.argv) >= 3 else 8

    tasks = [Task(id=f"demo-{i:03d}", description=f"fake fetch #{i}", operation=_operation(i)) for i in range(n)]

    with TaskExecutor(concurrency, task_timeout=0.5, name="demo", show_progress=True) as ex:
        results, stats = ex.execute_batch(tasks)

    print("=" * 60)
    print("Batch stats")
    print("=" * 60)
    for k, v in stats.as_dict().items():
        print(f"  {k:<20} {v}")

    failed = [r for r in results if not r.success]
    if failed:
        print("\nFailed tasks:")
        for r in failed[:10]:
            print(f"  {r.task_id}: {type(r.error).__name__}: {r.error}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
