"""Incremental K-line sync for A-share stocks (Tushare -> DuckDB)."""

__all__ = [
    "__version__",
    "Context",
    "ExecutionStats",
    "Task",
    "TaskExecutor",
    "TaskResult",
    "WorkerPool",
]

__version__ = "0.1.0"

# Convenience imports for using the batch engine on its own.
from kline_sync.context import Context  # noqa: E402,F401
from kline_sync.executor import TaskExecutor  # noqa: E402,F401
from kline_sync.tasks import ExecutionStats, Task, TaskResult  # noqa: E402,F401
from kline_sync.worker_pool import WorkerPool  # noqa: E402,F401
