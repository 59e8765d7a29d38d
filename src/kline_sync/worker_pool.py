from __future__ import annotations

import logging
import queue
import threading
import time

from kline_sync.context import Context
from kline_sync.errors import PoolClosedError, QueueFullError
from kline_sync.executor import TaskExecutor
from kline_sync.tasks import Task, TaskResult


logger = logging.getLogger(__name__)


_STOP = object()

_POLL_SECONDS = 0.05


class WorkerPool:
    """
    Fixed set of long-lived workers draining a bounded queue.

    Use this when producers and the consumer of results are decoupled; when the
    whole task set is known up front, `TaskExecutor.execute_batch` is simpler.
    """

    def __init__(self, workers: int = 0, queue_size: int = 0, *, task_timeout: float = 0.0, name: str = "pool") -> None:
        self._executor = TaskExecutor(max_concurrency=workers, task_timeout=task_timeout, name=name)
        self.workers = self._executor.max_concurrency
        self.queue_size = queue_size if queue_size > 0 else self.workers * 2
        self.name = name

        self._tasks: queue.Queue = queue.Queue(maxsize=self.queue_size)
        self._results: queue.Queue = queue.Queue()
        self._ctx = Context.background()
        self._lock = threading.Lock()
        self._closed = False
        self._drained = threading.Event()

        self._threads = [
            threading.Thread(target=self._worker, args=(i,), name=f"{name}-worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for t in self._threads:
            t.start()
        logger.info("%s: started (workers=%d, queue_size=%d)", name, self.workers, self.queue_size)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _worker(self, worker_id: int) -> None:
        logger.debug("%s: worker %d started", self.name, worker_id)
        while True:
            item = self._tasks.get()
            try:
                if item is _STOP:
                    logger.debug("%s: worker %d exiting", self.name, worker_id)
                    return
                self._results.put(self._executor.execute(item, self._ctx))
            finally:
                self._tasks.task_done()

    def submit(self, task: Task) -> None:
        """Queue a task without blocking; raises when full or closed."""
        with self._lock:
            if self._closed:
                raise PoolClosedError(f"{self.name}: pool is closed")
            try:
                self._tasks.put_nowait(task)
            except queue.Full:
                raise QueueFullError(f"{self.name}: task queue is full ({self.queue_size})") from None

    def get_result(self, timeout: float | None = None) -> TaskResult | None:
        """
        Next finished result. Returns None on timeout, or once the pool is closed
        and every result has been consumed.
        """
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        while True:
            drained = self._drained.is_set()
            wait_s = _POLL_SECONDS if deadline is None else min(_POLL_SECONDS, max(0.0, deadline - time.monotonic()))
            try:
                return self._results.get(timeout=wait_s) if wait_s > 0 else self._results.get_nowait()
            except queue.Empty:
                # Checked before the get: a result queued during close() is never missed.
                if drained:
                    return None
                if deadline is not None and time.monotonic() >= deadline:
                    return None

    def close(self) -> None:
        """Stop accepting tasks, finish everything already queued, then stop workers."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        logger.info("%s: closing (pending=%d)", self.name, self._tasks.qsize())
        for _ in self._threads:
            # Blocking put: sentinels queue up behind the remaining tasks.
            self._tasks.put(_STOP)
        for t in self._threads:
            t.join()
        self._executor.close()
        self._drained.set()
        logger.info("%s: closed", self.name)

    def stats(self) -> dict:
        return {
            "workers": self.workers,
            "queue_size": self.queue_size,
            "pending_tasks": self._tasks.qsize(),
            "pending_results": self._results.qsize(),
            "timeout_s": self._executor.task_timeout,
        }
