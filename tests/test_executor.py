from __future__ import annotations

import sys
import threading
import time

import pytest

from kline_sync.context import Context
from kline_sync.errors import ExecutorClosedError, ParseError, TaskCancelledError, TaskTimeoutError
from kline_sync.executor import TaskExecutor
from kline_sync.tasks import ExecutionStats, Task


def _task(i: int, fn) -> Task:
    return Task(id=f"t{i}", description=f"task {i}", operation=fn)


def test_execute_batch_returns_results_in_input_order() -> None:
    # Later tasks finish first.
    def op(delay: float):
        return lambda ctx: time.sleep(delay)

    tasks = [_task(i, op(0.01 * (10 - i))) for i in range(10)]
    with TaskExecutor(4, 5.0) as ex:
        results, stats = ex.execute_batch(tasks)

    assert [r.task_id for r in results] == [f"t{i}" for i in range(10)]
    assert all(r.success for r in results)
    assert stats.total_tasks == 10
    assert stats.success_tasks + stats.failed_tasks == stats.total_tasks
    assert stats.total_duration == sum((r.duration for r in results), start=stats.min_duration * 0)
    assert stats.min_duration <= stats.average_duration <= stats.max_duration


def test_concurrency_never_exceeds_cap() -> None:
    lock = threading.Lock()
    running = 0
    peak = 0

    def track(ctx: Context) -> None:
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.05)
        with lock:
            running -= 1

    with TaskExecutor(2, 5.0) as ex:
        results, stats = ex.execute_batch([_task(i, track) for i in range(10)])

    assert stats.success_tasks == 10
    assert 1 <= peak <= 2


def test_empty_batch_returns_zero_stats() -> None:
    with TaskExecutor(2, 1.0) as ex:
        results, stats = ex.execute_batch([])
    assert results == []
    assert stats.total_tasks == 0
    assert stats.total_duration == ExecutionStats.empty().total_duration
    assert stats.average_duration.total_seconds() == 0
    assert stats.max_duration.total_seconds() == 0


def test_failing_task_does_not_affect_siblings() -> None:
    def boom(ctx: Context) -> None:
        raise ValueError("bad payload")

    tasks = [_task(0, lambda ctx: None), _task(1, boom), _task(2, lambda ctx: None)]
    with TaskExecutor(3, 5.0) as ex:
        results, stats = ex.execute_batch(tasks)

    assert [r.success for r in results] == [True, False, True]
    assert isinstance(results[1].error, ValueError)
    assert stats.failed_tasks == 1
    assert stats.timed_out_tasks == 0


def test_system_exit_in_task_becomes_a_failed_result() -> None:
    def quits(ctx: Context) -> None:
        sys.exit(3)

    tasks = [_task(0, lambda ctx: None), _task(1, quits), _task(2, lambda ctx: None)]
    with TaskExecutor(3, 5.0) as ex:
        results, stats = ex.execute_batch(tasks)

    assert [r.task_id for r in results] == ["t0", "t1", "t2"]
    assert [r.success for r in results] == [True, False, True]
    assert isinstance(results[1].error, SystemExit)
    assert stats.failed_tasks == 1


def test_batch_retry_delay_does_not_block_other_tasks() -> None:
    finished: dict[str, float] = {}
    calls = {"t0": 0}
    started = time.monotonic()

    def fails_once(ctx: Context) -> None:
        calls["t0"] += 1
        if calls["t0"] == 1:
            raise RuntimeError("first attempt fails")
        finished["t0"] = time.monotonic() - started

    def quick(ctx: Context) -> None:
        finished["t1"] = time.monotonic() - started

    with TaskExecutor(1, 5.0) as ex:
        results, stats = ex.execute_batch([_task(0, fails_once), _task(1, quick)], max_retries=2, retry_delay=0.5)

    assert stats.success_tasks == 2
    assert calls["t0"] == 2
    # The only slot was free for t1 while t0 waited out its delay.
    assert finished["t1"] < 0.4
    assert finished["t0"] >= 0.5


def test_batch_retry_stops_when_context_ends_during_delay() -> None:
    ctx = Context.background().with_cancel()

    def failing(c: Context) -> None:
        raise RuntimeError("down")

    threading.Timer(0.1, ctx.cancel).start()
    with TaskExecutor(2, 5.0) as ex:
        results, stats = ex.execute_batch([_task(0, failing), _task(1, lambda c: None)], ctx, max_retries=3, retry_delay=10.0)

    assert results[0].cancelled
    assert results[1].success
    assert stats.cancelled_tasks == 1


def test_execute_with_retry_makes_max_retries_plus_one_attempts() -> None:
    calls = 0

    def failing(ctx: Context) -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("still down")

    with TaskExecutor(1, 5.0) as ex:
        result = ex.execute_with_retry(_task(0, failing), 3, 0)

    assert calls == 4
    assert not result.success
    assert isinstance(result.error, RuntimeError)


def test_execute_with_retry_returns_first_success() -> None:
    calls = 0

    def flaky(ctx: Context) -> None:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise RuntimeError("flaky")

    with TaskExecutor(1, 5.0) as ex:
        result = ex.execute_with_retry(_task(0, flaky), 5, 0)

    assert result.success
    assert calls == 3


def test_execute_with_retry_does_not_retry_parse_errors() -> None:
    calls = 0

    def malformed(ctx: Context) -> None:
        nonlocal calls
        calls += 1
        raise ParseError("bad date")

    with TaskExecutor(1, 5.0) as ex:
        result = ex.execute_with_retry(_task(0, malformed), 3, 0)

    assert calls == 1
    assert isinstance(result.error, ParseError)


def test_execute_with_retry_cancelled_during_delay_returns_cancellation() -> None:
    ctx = Context.background().with_cancel()
    calls = 0

    def failing(c: Context) -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("down")

    threading.Timer(0.1, ctx.cancel).start()
    started = time.monotonic()
    with TaskExecutor(1, 5.0) as ex:
        result = ex.execute_with_retry(_task(0, failing), 5, 10.0, ctx)

    assert time.monotonic() - started < 5.0
    assert calls == 1
    assert result.cancelled


def test_batch_retries_failed_tasks() -> None:
    attempts: dict[str, int] = {}
    lock = threading.Lock()

    def flaky_once(name: str):
        def run(ctx: Context) -> None:
            with lock:
                attempts[name] = attempts.get(name, 0) + 1
                n = attempts[name]
            if n == 1:
                raise RuntimeError("first attempt fails")

        return run

    tasks = [Task(id=f"t{i}", description="", operation=flaky_once(f"t{i}")) for i in range(4)]
    with TaskExecutor(2, 5.0) as ex:
        results, stats = ex.execute_batch(tasks, max_retries=1, retry_delay=0)

    assert stats.success_tasks == 4
    assert attempts == {f"t{i}": 2 for i in range(4)}


def test_timeout_reports_immediately_but_holds_slot_until_return() -> None:
    finished = threading.Event()

    def slow(ctx: Context) -> None:
        time.sleep(0.5)
        finished.set()

    ex = TaskExecutor(1, 0.1)
    started = time.monotonic()
    result = ex.execute(_task(0, slow))
    elapsed = time.monotonic() - started

    assert result.timed_out
    assert isinstance(result.error, TaskTimeoutError)
    assert elapsed < 0.45
    # The abandoned operation still occupies the only slot.
    assert not finished.is_set()
    assert ex.stats()["used_slots"] == 1

    ex.close()
    assert finished.is_set()
    assert ex.stats()["used_slots"] == 0


def test_cooperative_operation_observes_deadline() -> None:
    def waits(ctx: Context) -> None:
        ctx.wait(10.0)
        ctx.check()

    started = time.monotonic()
    with TaskExecutor(1, 0.1) as ex:
        result = ex.execute(_task(0, waits))
    assert result.timed_out
    assert time.monotonic() - started < 2.0


def test_cancelled_context_consumes_no_slot() -> None:
    called = False

    def op(ctx: Context) -> None:
        nonlocal called
        called = True

    ctx = Context.background().with_cancel()
    ctx.cancel()
    with TaskExecutor(1, 1.0) as ex:
        result = ex.execute(_task(0, op), ctx)
        assert ex.stats()["used_slots"] == 0

    assert not called
    assert not result.success
    assert isinstance(result.error, TaskCancelledError)


def test_batch_timeout_cancels_tasks_not_yet_started() -> None:
    def quick(ctx: Context) -> None:
        time.sleep(0.01)

    def slow(ctx: Context) -> None:
        time.sleep(1.0)

    tasks = [_task(0, quick)] + [_task(i, slow) for i in range(1, 5)]
    with TaskExecutor(1, 30.0) as ex:
        results, stats = ex.execute_batch(tasks, batch_timeout=0.5)

    assert results[0].success
    assert all(r.cancelled for r in results[1:])
    assert stats.cancelled_tasks == 4
    assert stats.failed_tasks == 4


def test_close_waits_for_in_flight_tasks_and_rejects_new_work() -> None:
    done = threading.Event()
    started = threading.Event()

    def op(ctx: Context) -> None:
        started.set()
        time.sleep(0.2)
        done.set()

    ex = TaskExecutor(2, 5.0)
    worker = threading.Thread(target=ex.execute, args=(_task(0, op),))
    worker.start()
    assert started.wait(2.0)

    ex.close()
    assert done.is_set()

    with pytest.raises(ExecutorClosedError):
        ex.execute(_task(1, lambda ctx: None))

    # Idempotent.
    ex.close()
    worker.join()


def test_defaults_use_cpu_count_and_thirty_seconds() -> None:
    import os

    ex = TaskExecutor(0, 0)
    try:
        s = ex.stats()
        assert s["max_concurrency"] == (os.cpu_count() or 1)
        assert s["timeout_s"] == 30.0
        assert s["available_slots"] == s["max_concurrency"]
    finally:
        ex.close()
