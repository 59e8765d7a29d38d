from __future__ import annotations

import logging
import random

from tenacity import (
    RetryCallState,
    Retrying,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from kline_sync.context import Context
from kline_sync.errors import KlineSyncError, TaskCancelledError, TaskTimeoutError


logger = logging.getLogger(__name__)


class TransientError(KlineSyncError, RuntimeError):
    """Retryable provider failure (network, empty page, upstream hiccup)."""


class RateLimitError(TransientError):
    """Provider throttling; the quota window is a minute so waits are long."""


def is_transient_exception(exc: BaseException) -> bool:
    # A task deadline surfacing through ctx.check() is not a provider failure.
    if isinstance(exc, (TaskTimeoutError, TaskCancelledError)):
        return False
    return isinstance(exc, (TimeoutError, ConnectionError, TransientError))


def _wait_seconds(retry_state: RetryCallState) -> float:
    """
    RateLimitError waits out the provider's minute window (plus jitter);
    everything else backs off exponentially with jitter.
    """
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, RateLimitError):
        return 61.0 + random.uniform(0.0, 3.0)
    base = wait_random_exponential(multiplier=1, max=30)
    return float(base(retry_state))


def _before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    sleep = getattr(retry_state.next_action, "sleep", None)
    fn = getattr(retry_state.fn, "__qualname__", str(retry_state.fn))
    if sleep is None:
        logger.warning("Retrying %s (attempt %s) after error: %s", fn, retry_state.attempt_number, exc)
    else:
        logger.warning(
            "Retrying %s (attempt %s) in %.1fs after error: %s",
            fn,
            retry_state.attempt_number,
            float(sleep),
            exc,
        )


def retry_policy(max_attempts: int = 5):
    """Decorator for provider calls: retries transient failures only."""
    return retry(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=_wait_seconds,
        before_sleep=_before_sleep,
        retry=retry_if_exception(is_transient_exception),
    )


def retrying(max_attempts: int = 5, *, ctx: Context | None = None) -> Retrying:
    """
    Same policy as `retry_policy`, for call sites that hold a Context.

    Backoff sleeps end early (raising the context's error) when the task is
    cancelled or times out.
    """
    kwargs = {}
    if ctx is not None:

        def _sleep(seconds: float) -> None:
            if not ctx.wait(seconds):
                ctx.check()

        kwargs["sleep"] = _sleep
    return Retrying(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=_wait_seconds,
        before_sleep=_before_sleep,
        retry=retry_if_exception(is_transient_exception),
        **kwargs,
    )
