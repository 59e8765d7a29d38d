from __future__ import annotations


class KlineSyncError(Exception):
    """Base class for errors raised by kline_sync."""


class ParseError(KlineSyncError, ValueError):
    """Malformed date key or payload. Isolated to one task and never retried."""


class TaskTimeoutError(KlineSyncError, TimeoutError):
    """A task operation exceeded its per-task timeout."""


class TaskCancelledError(KlineSyncError):
    """The enclosing context was cancelled before or while the task ran."""


class BatchDeadlineExceeded(TaskCancelledError):
    """The batch-level deadline passed; tasks not yet started short-circuit."""


class FatalJobError(KlineSyncError):
    """Setup-phase failure (entity universe, repository) that aborts a whole job."""


class ExecutorClosedError(KlineSyncError, RuntimeError):
    """Work was submitted to an executor after close() began."""


class PoolClosedError(KlineSyncError, RuntimeError):
    """Work was submitted to a worker pool after close() began."""


class QueueFullError(KlineSyncError, RuntimeError):
    """The worker pool queue is saturated."""


def is_cancellation(exc: BaseException | None) -> bool:
    return isinstance(exc, TaskCancelledError)


def is_timeout(exc: BaseException | None) -> bool:
    return isinstance(exc, TaskTimeoutError)
