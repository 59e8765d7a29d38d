from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass

from kline_sync.errors import KlineSyncError
from kline_sync.retry import TransientError, retry_policy


logger = logging.getLogger(__name__)


class NotifyError(KlineSyncError, RuntimeError):
    """The webhook rejected the message."""


def dingtalk_signed_url(webhook: str, secret: str, *, timestamp_ms: int | None = None) -> str:
    """Append DingTalk's `timestamp` and HMAC-SHA256 `sign` query parameters."""
    ts = str(timestamp_ms if timestamp_ms is not None else int(time.time() * 1000))
    digest = hmac.new(secret.encode("utf-8"), f"{ts}\n{secret}".encode("utf-8"), hashlib.sha256).digest()
    sign = base64.b64encode(digest).decode("ascii")
    sep = "&" if urllib.parse.urlparse(webhook).query else "?"
    return f"{webhook}{sep}{urllib.parse.urlencode({'timestamp': ts, 'sign': sign})}"


@dataclass(frozen=True)
class WebhookNotifier:
    """
    Text robot for DingTalk or WeWork group chats.

    Both accept `{"msgtype": "text", "text": {"content": ...}}` and answer with
    `{"errcode": 0}` on success.
    """

    webhook: str
    kind: str = "dingtalk"
    secret: str = ""
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if not self.webhook:
            raise ValueError("webhook is empty")
        if self.kind not in {"dingtalk", "wework"}:
            raise ValueError(f"Unknown notifier kind: {self.kind!r} (expected 'dingtalk' or 'wework')")

    def _url(self) -> str:
        if self.kind == "dingtalk" and self.secret:
            return dingtalk_signed_url(self.webhook, self.secret)
        return self.webhook

    @retry_policy(max_attempts=3)
    def send(self, text: str) -> None:
        body = json.dumps({"msgtype": "text", "text": {"content": text}}).encode("utf-8")
        req = urllib.request.Request(
            self._url(),
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw = resp.read()
        except urllib.error.HTTPError as e:
            if e.code >= 500:
                raise TransientError(f"{self.kind} webhook HTTP {e.code}") from e
            raise NotifyError(f"{self.kind} webhook HTTP {e.code}") from e
        except urllib.error.URLError as e:
            raise TransientError(f"{self.kind} webhook unreachable: {e.reason}") from e

        try:
            result = json.loads(raw.decode("utf-8") or "{}")
        except ValueError as e:
            raise NotifyError(f"{self.kind} webhook returned non-JSON body") from e
        code = result.get("errcode", 0)
        if code not in (0, "0"):
            raise NotifyError(f"{self.kind} webhook error: code={code}, msg={result.get('errmsg', 'unknown error')}")
        logger.info("notifier: %s message sent", self.kind)


class LogNotifier:
    """Writes reports to the log; used when no webhook is configured."""

    def send(self, text: str) -> None:
        logger.info("report:\n%s", text)
