from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from kline_sync.errors import TaskCancelledError


# Upper bound on a single blocking wait so parent cancellation and deadlines
# are observed promptly by child contexts.
_POLL_SECONDS = 0.05


class Context:
    """
    Cancellation signal shared by a tree of operations.

    A context ends when it is cancelled, when any ancestor ends, or when its
    deadline passes. Operations are expected to call `check()` or `wait()`
    at their suspension points; the executor relies on this to stop work that
    outlived its timeout.
    """

    def __init__(
        self,
        parent: Optional["Context"] = None,
        *,
        deadline: float | None = None,
        deadline_error: Callable[[], BaseException] | None = None,
    ) -> None:
        self._parent = parent
        self._deadline = deadline
        self._deadline_error = deadline_error or (lambda: TaskCancelledError("context deadline exceeded"))
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._error: BaseException | None = None

    @classmethod
    def background(cls) -> "Context":
        return cls()

    def with_cancel(self) -> "Context":
        return Context(self)

    def with_timeout(
        self,
        seconds: float | None,
        *,
        error: Callable[[], BaseException] | None = None,
    ) -> "Context":
        """Child context that ends `seconds` from now (or never when None)."""
        if seconds is None:
            return Context(self)
        deadline = time.monotonic() + max(0.0, float(seconds))
        # Ancestor deadlines are still observed through err().
        return Context(self, deadline=deadline, deadline_error=error)

    def cancel(self, error: BaseException | None = None) -> None:
        with self._lock:
            if self._error is None:
                self._error = error or TaskCancelledError("context cancelled")
        self._event.set()

    def err(self) -> BaseException | None:
        with self._lock:
            if self._error is not None:
                return self._error
        if self._deadline is not None and time.monotonic() >= self._deadline:
            with self._lock:
                if self._error is None:
                    self._error = self._deadline_error()
                err = self._error
            self._event.set()
            return err
        if self._parent is not None:
            return self._parent.err()
        return None

    @property
    def done(self) -> bool:
        return self.err() is not None

    def check(self) -> None:
        err = self.err()
        if err is not None:
            raise err

    def remaining(self) -> float | None:
        """Seconds until the nearest deadline in the chain, or None."""
        out: float | None = None
        ctx: Context | None = self
        now = time.monotonic()
        while ctx is not None:
            if ctx._deadline is not None:
                left = max(0.0, ctx._deadline - now)
                out = left if out is None else min(out, left)
            ctx = ctx._parent
        return out

    def wait(self, seconds: float) -> bool:
        """
        Sleep for `seconds` unless the context ends first.

        Returns True when the full delay elapsed, False when the context ended.
        """
        end = time.monotonic() + max(0.0, float(seconds))
        while True:
            if self.err() is not None:
                return False
            left = end - time.monotonic()
            if left <= 0:
                return True
            self._event.wait(min(left, _POLL_SECONDS))
