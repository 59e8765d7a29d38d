from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import Callable, Iterable

from kline_sync.context import Context
from kline_sync.errors import is_cancellation, is_timeout


Operation = Callable[[Context], None]


def utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


@dataclass(frozen=True)
class Task:
    """A named unit of work. `operation(ctx)` raises to signal failure."""

    id: str
    description: str
    operation: Operation = field(repr=False, compare=False)

    def run(self, ctx: Context) -> None:
        self.operation(ctx)


@dataclass(frozen=True)
class TaskResult:
    task_id: str
    success: bool
    error: BaseException | None
    start_time: _dt.datetime
    end_time: _dt.datetime

    @property
    def duration(self) -> _dt.timedelta:
        return self.end_time - self.start_time

    @property
    def timed_out(self) -> bool:
        return is_timeout(self.error)

    @property
    def cancelled(self) -> bool:
        return is_cancellation(self.error)

    @classmethod
    def ok(cls, task_id: str, start_time: _dt.datetime) -> "TaskResult":
        return cls(task_id=task_id, success=True, error=None, start_time=start_time, end_time=utc_now())

    @classmethod
    def failed(cls, task_id: str, start_time: _dt.datetime, error: BaseException) -> "TaskResult":
        return cls(task_id=task_id, success=False, error=error, start_time=start_time, end_time=utc_now())


_ZERO = _dt.timedelta(0)


@dataclass(frozen=True)
class ExecutionStats:
    total_tasks: int
    success_tasks: int
    failed_tasks: int
    timed_out_tasks: int
    cancelled_tasks: int
    total_duration: _dt.timedelta
    average_duration: _dt.timedelta
    min_duration: _dt.timedelta
    max_duration: _dt.timedelta
    start_time: _dt.datetime | None
    end_time: _dt.datetime | None

    @property
    def elapsed(self) -> _dt.timedelta:
        if self.start_time is None or self.end_time is None:
            return _ZERO
        return self.end_time - self.start_time

    @classmethod
    def empty(cls, at: _dt.datetime | None = None) -> "ExecutionStats":
        return cls(
            total_tasks=0,
            success_tasks=0,
            failed_tasks=0,
            timed_out_tasks=0,
            cancelled_tasks=0,
            total_duration=_ZERO,
            average_duration=_ZERO,
            min_duration=_ZERO,
            max_duration=_ZERO,
            start_time=at,
            end_time=at,
        )

    @classmethod
    def from_results(
        cls,
        results: Iterable[TaskResult],
        *,
        start_time: _dt.datetime,
        end_time: _dt.datetime,
    ) -> "ExecutionStats":
        results = list(results)
        if not results:
            return cls.empty(start_time)

        durations = [r.duration for r in results]
        total = sum(durations, _ZERO)
        success = sum(1 for r in results if r.success)
        return cls(
            total_tasks=len(results),
            success_tasks=success,
            failed_tasks=len(results) - success,
            timed_out_tasks=sum(1 for r in results if r.timed_out),
            cancelled_tasks=sum(1 for r in results if r.cancelled),
            total_duration=total,
            average_duration=total / len(results),
            min_duration=min(durations),
            max_duration=max(durations),
            start_time=start_time,
            end_time=end_time,
        )

    def as_dict(self) -> dict:
        return {
            "total_tasks": self.total_tasks,
            "success_tasks": self.success_tasks,
            "failed_tasks": self.failed_tasks,
            "timed_out_tasks": self.timed_out_tasks,
            "cancelled_tasks": self.cancelled_tasks,
            "total_duration_s": self.total_duration.total_seconds(),
            "average_duration_s": self.average_duration.total_seconds(),
            "min_duration_s": self.min_duration.total_seconds(),
            "max_duration_s": self.max_duration.total_seconds(),
            "elapsed_s": self.elapsed.total_seconds(),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }
