from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any

import pandas as pd

from kline_sync.context import Context
from kline_sync.rate_limit import RateLimiter
from kline_sync.retry import RateLimitError, TransientError, retrying


logger = logging.getLogger(__name__)


_TRANSIENT_PATTERNS = [
    re.compile(r".*timeout.*", re.IGNORECASE),
    re.compile(r".*timed out.*", re.IGNORECASE),
    re.compile(r".*temporar.*unavailable.*", re.IGNORECASE),
    re.compile(r".*connection.*(reset|aborted|refused).*", re.IGNORECASE),
    re.compile(r".*too many.*request.*", re.IGNORECASE),
    re.compile(r".*频次.*限制.*", re.IGNORECASE),
    re.compile(r".*访问.*过于频繁.*", re.IGNORECASE),
]


_RATE_LIMIT_PATTERNS = [
    re.compile(r".*每分钟最多访问.*", re.IGNORECASE),
    re.compile(r".*最多访问.*次.*", re.IGNORECASE),
    re.compile(r".*访问该接口\d+次.*", re.IGNORECASE),
]

_LOG_KEYS = ("ts_code", "start_date", "end_date", "period", "exchange", "list_status")


def _looks_transient_message(msg: str) -> bool:
    return any(p.search(msg or "") for p in _TRANSIENT_PATTERNS)


def _looks_rate_limited_message(msg: str) -> bool:
    return any(p.search(msg or "") for p in _RATE_LIMIT_PATTERNS)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class TushareClient:
    token: str
    limiter: RateLimiter
    max_attempts: int = 8

    def __post_init__(self) -> None:
        if not self.token:
            raise ValueError("token is empty")

    def _call(self, api_name: str, ctx: Context | None, params: dict[str, Any]) -> pd.DataFrame:
        self.limiter.acquire(ctx)
        if ctx is not None:
            ctx.check()

        if _env_flag("KLINE_SYNC_LOG_TUSHARE_QUERY"):
            slim = " ".join(f"{k}={params[k]}" for k in _LOG_KEYS if k in params)
            logger.info("tushare: query api=%s %s", api_name, slim)

        import tushare as ts

        try:
            pro = ts.pro_api(self.token)
            df = pro.query(api_name, **params)
        except Exception as e:  # noqa: BLE001 - mapped to transient/non-transient
            msg = str(e)
            if _looks_rate_limited_message(msg):
                self.limiter.note_rate_limited()
                raise RateLimitError(msg) from e
            if _looks_transient_message(msg):
                raise TransientError(msg) from e
            raise

        if df is None:
            return pd.DataFrame()
        return df if isinstance(df, pd.DataFrame) else pd.DataFrame(df)

    def query(self, api_name: str, *, ctx: Context | None = None, **params: Any) -> pd.DataFrame:
        """
        Calls a Tushare Pro endpoint via `pro.query(api_name, **params)`.

        Transient failures are retried with backoff; rate limiting is shared
        through the limiter. With a context, waits end when the task does.
        """
        return retrying(self.max_attempts, ctx=ctx)(self._call, api_name, ctx, params)

    def query_all(self, api_name: str, *, ctx: Context | None = None, page_size: int = 5000, max_pages: int = 200, **params: Any) -> pd.DataFrame:
        """Query with offset/limit pagination and concatenate pages."""
        if page_size <= 0:
            raise ValueError("page_size must be > 0")
        pages: list[pd.DataFrame] = []
        offset = 0
        for _ in range(max_pages):
            page = self.query(api_name, ctx=ctx, **params, limit=page_size, offset=offset)
            if len(page.columns) == 0 or page.empty:
                break
            pages.append(page)
            if len(page) < page_size:
                break
            offset += page_size
        else:
            raise RuntimeError(f"Pagination exceeded max_pages={max_pages} for api={api_name}")

        if not pages:
            return pd.DataFrame()
        if len(pages) == 1:
            return pages[0]
        return pd.concat(pages, ignore_index=True)
