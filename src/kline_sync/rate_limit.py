from __future__ import annotations

import collections
import threading
import time

from kline_sync.context import Context


class RateLimiter:
    """
    Rolling 60-second window shared by every thread that talks to one provider.

    `acquire()` blocks until a call is allowed; pass a context to give up when
    the calling task is cancelled or times out.
    """

    def __init__(self, *, rpm: int):
        if rpm <= 0:
            raise ValueError("rpm must be > 0")
        self.rpm = rpm
        self._lock = threading.Lock()
        self._calls: collections.deque[float] = collections.deque()
        self._cooldown_until = 0.0

    def note_rate_limited(self, *, cooldown_s: float = 65.0) -> None:
        """Pause every caller after the provider reported throttling."""
        until = time.monotonic() + max(0.0, float(cooldown_s))
        with self._lock:
            self._cooldown_until = max(self._cooldown_until, until)

    def _try_acquire(self) -> float:
        """Record a call and return 0.0, or return how long to wait."""
        now = time.monotonic()
        with self._lock:
            if now < self._cooldown_until:
                return self._cooldown_until - now
            cutoff = now - 60.0
            while self._calls and self._calls[0] < cutoff:
                self._calls.popleft()
            if len(self._calls) < self.rpm:
                self._calls.append(now)
                return 0.0
            return max(0.0, 60.0 - (now - self._calls[0]))

    def acquire(self, ctx: Context | None = None) -> None:
        while True:
            wait_s = self._try_acquire()
            if wait_s <= 0.0:
                return
            # Sleep outside the lock so other threads can progress.
            if ctx is None:
                time.sleep(min(wait_s, 5.0))
            elif not ctx.wait(min(wait_s, 5.0)):
                ctx.check()
