from __future__ import annotations

import time

import pandas as pd
import pytest

from kline_sync.context import Context
from kline_sync.errors import ParseError, TaskCancelledError, TaskTimeoutError
from kline_sync.rate_limit import RateLimiter
from kline_sync.retry import RateLimitError, TransientError, is_transient_exception, retrying
from kline_sync.tushare_client import TushareClient


@pytest.mark.parametrize(
    "exc, expected",
    [
        (TransientError("x"), True),
        (RateLimitError("x"), True),
        (ConnectionError("x"), True),
        (TimeoutError("x"), True),
        (TaskTimeoutError("x"), False),
        (TaskCancelledError("x"), False),
        (ParseError("x"), False),
        (ValueError("x"), False),
    ],
)
def test_is_transient_exception(exc, expected) -> None:
    assert is_transient_exception(exc) is expected


def test_retrying_stops_waiting_when_context_is_cancelled() -> None:
    ctx = Context.background().with_cancel()
    calls = {"n": 0}

    def flaky() -> None:
        calls["n"] += 1
        ctx.cancel()
        raise TransientError("upstream hiccup")

    with pytest.raises(TaskCancelledError):
        retrying(5, ctx=ctx)(flaky)
    assert calls["n"] == 1


def test_retrying_backoff_is_cut_short_by_deadline() -> None:
    ctx = Context.background().with_timeout(0.2)
    calls = {"n": 0}

    def flaky() -> None:
        calls["n"] += 1
        time.sleep(0.3)
        raise TransientError("slow upstream")

    with pytest.raises(TaskCancelledError):
        retrying(5, ctx=ctx)(flaky)
    assert calls["n"] == 1


def test_retrying_gives_up_after_max_attempts() -> None:
    calls = {"n": 0}

    def always_fails() -> None:
        calls["n"] += 1
        raise ParseError("bad payload")

    with pytest.raises(ParseError):
        retrying(3)(always_fails)
    assert calls["n"] == 1


class _FakePro:
    def __init__(self, error: Exception | None = None, df: pd.DataFrame | None = None):
        self.error = error
        self.df = df
        self.calls: list[tuple[str, dict]] = []

    def query(self, api_name, **params):
        self.calls.append((api_name, params))
        if self.error is not None:
            raise self.error
        return self.df


def _client(monkeypatch, pro: _FakePro, limiter: RateLimiter | None = None) -> TushareClient:
    import tushare

    monkeypatch.setattr(tushare, "pro_api", lambda token: pro)
    return TushareClient(token="t", limiter=limiter or RateLimiter(rpm=1000), max_attempts=1)


def test_rate_limit_message_maps_and_pauses_limiter(monkeypatch) -> None:
    limiter = RateLimiter(rpm=1000)
    pro = _FakePro(error=Exception("抱歉，您每分钟最多访问该接口500次"))
    client = _client(monkeypatch, pro, limiter)

    with pytest.raises(RateLimitError):
        client.query("daily", ts_code="000001.SZ")
    assert limiter._try_acquire() > 0.0


def test_transient_message_maps_to_transient_error(monkeypatch) -> None:
    client = _client(monkeypatch, _FakePro(error=Exception("Read timed out")))
    with pytest.raises(TransientError):
        client.query("daily", ts_code="000001.SZ")


def test_other_provider_errors_propagate(monkeypatch) -> None:
    client = _client(monkeypatch, _FakePro(error=KeyError("fields")))
    with pytest.raises(KeyError):
        client.query("daily", ts_code="000001.SZ")


def test_query_all_paginates(monkeypatch) -> None:
    pages = [pd.DataFrame({"cal_date": ["1", "2"]}), pd.DataFrame({"cal_date": ["3"]})]

    class Paged(_FakePro):
        def query(self, api_name, **params):
            self.calls.append((api_name, params))
            return pages[params["offset"] // 2]

    pro = Paged()
    out = _client(monkeypatch, pro).query_all("trade_cal", page_size=2)
    assert out["cal_date"].tolist() == ["1", "2", "3"]
    assert [p["offset"] for _, p in pro.calls] == [0, 2]


def test_none_payload_becomes_empty_frame(monkeypatch) -> None:
    out = _client(monkeypatch, _FakePro(df=None)).query("daily", ts_code="000001.SZ")
    assert out.empty


def test_limiter_acquire_honours_context() -> None:
    limiter = RateLimiter(rpm=1)
    limiter.acquire()
    ctx = Context.background().with_timeout(0.1)
    with pytest.raises(TaskCancelledError):
        limiter.acquire(ctx)
