from __future__ import annotations

import contextlib
import dataclasses
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Iterable, Iterator

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from kline_sync.context import Context
from kline_sync.errors import (
    BatchDeadlineExceeded,
    ExecutorClosedError,
    ParseError,
    TaskCancelledError,
    TaskTimeoutError,
)
from kline_sync.retry import RateLimitError, TransientError
from kline_sync.tasks import ExecutionStats, Task, TaskResult, utc_now


logger = logging.getLogger(__name__)


DEFAULT_TASK_TIMEOUT = 30.0

_POLL_SECONDS = 0.05


class _RetryInterrupted(Exception):
    def __init__(self, error: BaseException) -> None:
        super().__init__(str(error))
        self.error = error


def _should_retry(result: TaskResult) -> bool:
    if result.success or result.cancelled:
        return False
    return not isinstance(result.error, (ParseError, ExecutorClosedError))


class TaskExecutor:
    """
    Runs tasks with at most `max_concurrency` operations in flight.

    Every operation gets a child context with the executor's per-task timeout.
    An operation that overruns is reported as `TaskTimeoutError` straight away,
    but its slot is only returned once the operation really finishes, so the
    cap always holds for running code.
    """

    def __init__(
        self,
        max_concurrency: int = 0,
        task_timeout: float = 0.0,
        *,
        name: str = "executor",
        show_progress: bool = False,
    ) -> None:
        if max_concurrency <= 0:
            max_concurrency = os.cpu_count() or 1
        if task_timeout <= 0:
            task_timeout = DEFAULT_TASK_TIMEOUT

        self.max_concurrency = int(max_concurrency)
        self.task_timeout = float(task_timeout)
        self.name = name
        self.show_progress = show_progress

        self._slots = threading.BoundedSemaphore(self.max_concurrency)
        self._used_lock = threading.Lock()
        self._used = 0
        # One runner thread per slot: a slot is held for as long as its operation runs.
        self._runner = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix=f"{name}-op")

        self._cond = threading.Condition()
        self._inflight = 0
        self._closing = False
        self._closed = False

    def __enter__(self) -> "TaskExecutor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- lifecycle -----------------------------------------------------------------

    def _enter(self) -> None:
        with self._cond:
            if self._closing:
                raise ExecutorClosedError(f"{self.name}: executor is closed")
            self._inflight += 1

    def _leave(self) -> None:
        with self._cond:
            self._inflight -= 1
            if self._inflight <= 0:
                self._cond.notify_all()

    def close(self) -> None:
        """Reject new work, wait for everything in flight, then release the slot pool."""
        with self._cond:
            if self._closed:
                return
            self._closing = True
            while self._inflight > 0:
                self._cond.wait()
            self._closed = True
        self._runner.shutdown(wait=True)
        logger.debug("%s: closed", self.name)

    # -- slots ---------------------------------------------------------------------

    def _acquire(self, ctx: Context) -> bool:
        while True:
            if ctx.err() is not None:
                return False
            if self._slots.acquire(timeout=_POLL_SECONDS):
                if ctx.err() is not None:
                    self._slots.release()
                    return False
                with self._used_lock:
                    self._used += 1
                return True

    def _release(self) -> None:
        with self._used_lock:
            self._used -= 1
        self._slots.release()

    def _op_done(self, _fut: Future | None = None) -> None:
        self._release()
        self._leave()

    # -- execution -----------------------------------------------------------------

    @staticmethod
    def _invoke(task: Task, ctx: Context) -> BaseException | None:
        try:
            task.run(ctx)
        except BaseException as e:  # noqa: BLE001 - nothing a task raises escapes the executor
            return e
        return None

    def _await(self, fut: Future, task_ctx: Context) -> BaseException | None:
        while True:
            try:
                err = fut.result(timeout=_POLL_SECONDS)
            except FutureTimeout:
                err = task_ctx.err()
                if err is not None:
                    # Abandon the operation; it still holds its slot until it returns.
                    task_ctx.cancel(err)
                    return err
                continue
            # Finishing after the deadline still counts as a timeout.
            if err is None and isinstance(task_ctx.err(), TaskTimeoutError):
                return task_ctx.err()
            return err

    def _execute(self, task: Task, ctx: Context) -> TaskResult:
        start = utc_now()
        if not self._acquire(ctx):
            err = ctx.err() or TaskCancelledError("context ended before a slot was acquired")
            logger.info("%s: task %s not started (%s)", self.name, task.id, err)
            return TaskResult.failed(task.id, start, err)

        timeout = self.task_timeout
        task_ctx = ctx.with_timeout(
            timeout,
            error=lambda: TaskTimeoutError(f"task {task.id} exceeded {timeout:.1f}s"),
        )

        with self._cond:
            self._inflight += 1
        try:
            fut = self._runner.submit(self._invoke, task, task_ctx)
        except BaseException:
            self._op_done()
            raise
        fut.add_done_callback(self._op_done)

        logger.debug("%s: start task %s - %s", self.name, task.id, task.description)
        err = self._await(fut, task_ctx)

        if err is None:
            result = TaskResult.ok(task.id, start)
            logger.debug("%s: task %s done in %.3fs", self.name, task.id, result.duration.total_seconds())
            return result

        result = TaskResult.failed(task.id, start, err)
        if isinstance(err, (TaskTimeoutError, TaskCancelledError, TransientError, RateLimitError, ParseError)):
            logger.warning("%s: task %s failed (%s: %s)", self.name, task.id, type(err).__name__, err)
        else:
            logger.error("%s: task %s failed", self.name, task.id, exc_info=err)
        return result

    def execute(self, task: Task, ctx: Context | None = None) -> TaskResult:
        """Run one task, blocking until a slot is free or `ctx` ends."""
        self._enter()
        try:
            return self._execute(task, ctx or Context.background())
        finally:
            self._leave()

    def execute_batch(
        self,
        tasks: Iterable[Task],
        ctx: Context | None = None,
        *,
        batch_timeout: float | None = None,
        max_retries: int = 0,
        retry_delay: float = 0.0,
    ) -> tuple[list[TaskResult], ExecutionStats]:
        """
        Run all tasks concurrently and wait for every one of them.

        Results come back in input order. `batch_timeout` bounds the whole batch:
        tasks that have not started when it passes are reported as cancelled.
        With `max_retries`, tasks that failed with a retryable error run again in
        rounds, `retry_delay` seconds apart; nothing is held while a round waits.
        """
        tasks = list(tasks)
        start = utc_now()
        if not tasks:
            return [], ExecutionStats.empty(start)

        self._enter()
        try:
            ctx = ctx or Context.background()
            if batch_timeout is not None and batch_timeout > 0:
                bt = float(batch_timeout)
                ctx = ctx.with_timeout(bt, error=lambda: BatchDeadlineExceeded(f"batch exceeded {bt:.1f}s"))

            logger.info(
                "%s: start batch (tasks=%d, max_concurrency=%d, task_timeout=%.0fs)",
                self.name,
                len(tasks),
                self.max_concurrency,
                self.task_timeout,
            )

            results: list[TaskResult | None] = [None] * len(tasks)
            pending = list(range(len(tasks)))
            attempt = 0
            with self._progress(len(tasks)) as advance:
                while pending:
                    attempt += 1
                    retry_next: list[int] = []
                    workers = min(len(pending), self.max_concurrency)
                    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{self.name}-batch") as pool:
                        future_to_index = {pool.submit(self._execute, tasks[i], ctx): i for i in pending}
                        for f in as_completed(future_to_index):
                            i = future_to_index[f]
                            results[i] = f.result()
                            if attempt <= max_retries and _should_retry(results[i]):
                                retry_next.append(i)
                            else:
                                advance(results[i])
                    pending = self._wait_retry_round(sorted(retry_next), results, attempt, retry_delay, ctx, advance)

            done = [r for r in results if r is not None]
            stats = ExecutionStats.from_results(done, start_time=start, end_time=utc_now())
            logger.info(
                "%s: batch done (total=%d, success=%d, failed=%d, timed_out=%d, cancelled=%d, elapsed=%.1fs, avg=%.3fs)",
                self.name,
                stats.total_tasks,
                stats.success_tasks,
                stats.failed_tasks,
                stats.timed_out_tasks,
                stats.cancelled_tasks,
                stats.elapsed.total_seconds(),
                stats.average_duration.total_seconds(),
            )
            return done, stats
        finally:
            self._leave()

    def _wait_retry_round(
        self,
        indexes: list[int],
        results: list[TaskResult | None],
        attempt: int,
        delay: float,
        ctx: Context,
        advance: Callable[[TaskResult], None],
    ) -> list[int]:
        """
        Sleep out the retry delay between batch rounds with no thread or slot held.

        Returns the indexes to run again; an ended context finalizes them instead.
        """
        if not indexes:
            return []
        logger.warning(
            "%s: %d task(s) failed on attempt %d; retrying in %.1fs",
            self.name,
            len(indexes),
            attempt,
            max(0.0, float(delay)),
        )
        if ctx.wait(max(0.0, float(delay))):
            return indexes
        err = ctx.err() or TaskCancelledError("context cancelled")
        for i in indexes:
            results[i] = dataclasses.replace(results[i], success=False, error=err)
            advance(results[i])
        return []

    def execute_with_retry(
        self,
        task: Task,
        max_retries: int,
        delay: float,
        ctx: Context | None = None,
    ) -> TaskResult:
        """
        Run `task` up to `max_retries + 1` times.

        Waits `delay` seconds between failing attempts. Cancellation, parse errors
        and closed-executor errors end the loop early. Returns the first success
        or the last failure.
        """
        self._enter()
        try:
            return self._retry(task, max_retries, delay, ctx or Context.background())
        finally:
            self._leave()

    def _retry(self, task: Task, max_retries: int, delay: float, ctx: Context) -> TaskResult:
        attempts: list[TaskResult] = []

        def _attempt() -> TaskResult:
            result = self._execute(task, ctx)
            attempts.append(result)
            return result

        def _sleep(seconds: float) -> None:
            if not ctx.wait(float(seconds)):
                raise _RetryInterrupted(ctx.err() or TaskCancelledError("context cancelled"))

        def _before_sleep(state: RetryCallState) -> None:
            last = state.outcome.result() if state.outcome else None
            sleep = getattr(state.next_action, "sleep", 0.0)
            logger.warning(
                "%s: task %s attempt %d failed (%s); retrying in %.1fs",
                self.name,
                task.id,
                state.attempt_number,
                getattr(last, "error", None),
                float(sleep or 0.0),
            )

        retryer = Retrying(
            stop=stop_after_attempt(max(0, int(max_retries)) + 1),
            wait=wait_fixed(max(0.0, float(delay))),
            retry=retry_if_result(_should_retry),
            sleep=_sleep,
            before_sleep=_before_sleep,
            retry_error_callback=lambda state: state.outcome.result(),
        )
        try:
            result = retryer(_attempt)
        except _RetryInterrupted as e:
            result = dataclasses.replace(attempts[-1], success=False, error=e.error)

        if result.success:
            if len(attempts) > 1:
                logger.info("%s: task %s succeeded on attempt %d", self.name, task.id, len(attempts))
        elif not result.cancelled:
            logger.error("%s: task %s still failing after %d attempt(s)", self.name, task.id, len(attempts))
        return result

    # -- reporting -----------------------------------------------------------------

    def stats(self) -> dict:
        with self._used_lock:
            used = self._used
        return {
            "name": self.name,
            "max_concurrency": self.max_concurrency,
            "timeout_s": self.task_timeout,
            "available_slots": self.max_concurrency - used,
            "used_slots": used,
        }

    @contextlib.contextmanager
    def _progress(self, total: int) -> Iterator[Callable[[TaskResult], None]]:
        if not self.show_progress:
            yield lambda _result: None
            return

        console = Console(stderr=True)
        with Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=console,
            transient=False,
        ) as progress:
            ptask = progress.add_task(self.name, total=total)
            failed = 0

            def _advance(result: TaskResult) -> None:
                nonlocal failed
                if not result.success:
                    failed += 1
                with self._used_lock:
                    running = self._used
                last = result.task_id if result.success else f"FAILED {result.task_id}"
                progress.update(ptask, description=f"{self.name} (running={running} failed={failed}) last={last}")
                progress.advance(ptask, 1)

            yield _advance
