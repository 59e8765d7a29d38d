import datetime as _dt
import sys
import threading
from pathlib import Path

import pandas as pd
import pytest


def pytest_configure() -> None:
    # Ensure `import kline_sync` works without requiring an editable install.
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


class FakeRepository:
    """In-memory Repository that records every mutating call in order."""

    def __init__(self) -> None:
        from kline_sync.models import Entity

        self._lock = threading.Lock()
        self.latest: dict[tuple[str, str], object] = {}
        self.written_at: dict[tuple[str, str], _dt.datetime | None] = {}
        self.entities: dict[str, Entity] = {}
        self.ops: list[tuple] = []
        self.reports: dict[str, pd.DataFrame] = {}
        self.job_reports: list = []

    def add_entity(self, ts_code: str, *, active: bool = True) -> None:
        from kline_sync.models import Entity

        self.entities[ts_code] = Entity(ts_code=ts_code, name=ts_code, is_active=active)

    def set_latest(self, ts_code: str, granularity, value, updated_at: _dt.datetime | None = None) -> None:
        key = (ts_code, getattr(granularity, "value", granularity))
        self.latest[key] = value
        self.written_at[key] = updated_at

    def get_latest(self, entity_id, granularity):
        from kline_sync.models import LatestRecord

        key = (entity_id, granularity.value)
        with self._lock:
            if key not in self.latest:
                return None
            return LatestRecord(
                entity_id=entity_id,
                granularity=granularity,
                last_period_date=self.latest[key],
                updated_at=self.written_at.get(key),
            )

    def delete(self, entity_id, period_date, granularity) -> int:
        with self._lock:
            self.ops.append(("delete", entity_id, period_date, granularity.value))
        return 1

    def upsert_batch(self, granularity, rows: pd.DataFrame) -> int:
        with self._lock:
            self.ops.append(("upsert", rows["ts_code"].iloc[0] if len(rows) else None, granularity.value, len(rows)))
            if len(rows):
                from kline_sync.utils_dates import coerce_date

                newest = max(coerce_date(v) for v in rows["trade_date"])
                key = (rows["ts_code"].iloc[0], granularity.value)
                prev = self.latest.get(key)
                if prev is None or coerce_date(prev) <= newest:
                    self.latest[key] = newest
                    self.written_at[key] = _dt.datetime.now(_dt.timezone.utc)
        return len(rows)

    def update_status(self, entity_id, active) -> None:
        from kline_sync.models import Entity

        with self._lock:
            self.ops.append(("status", entity_id, active))
            e = self.entities.get(entity_id) or Entity(ts_code=entity_id)
            self.entities[entity_id] = Entity(ts_code=e.ts_code, name=e.name, list_date=e.list_date, is_active=active)

    def list_entities(self, *, active_only: bool = False):
        out = sorted(self.entities.values(), key=lambda e: e.ts_code)
        return [e for e in out if e.is_active] if active_only else out

    def upsert_entities(self, rows: pd.DataFrame) -> int:
        for r in rows.itertuples(index=False):
            self.add_entity(r.ts_code, active=str(getattr(r, "list_status", "L")).upper() != "D")
        return len(rows)

    def upsert_reports(self, table: str, rows: pd.DataFrame) -> int:
        with self._lock:
            self.ops.append(("report", table, len(rows)))
            self.reports[table] = pd.concat([self.reports.get(table, pd.DataFrame()), rows], ignore_index=True)
        return len(rows)

    def record_job_run(self, report) -> None:
        self.job_reports.append(report)

    def job_runs(self, *, limit: int = 20) -> pd.DataFrame:
        return pd.DataFrame([r.as_dict() for r in self.job_reports[-limit:]])


@pytest.fixture
def fake_repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def shanghai():
    from zoneinfo import ZoneInfo

    return ZoneInfo("Asia/Shanghai")


@pytest.fixture
def at(shanghai):
    """Build an Asia/Shanghai datetime: at(2024, 1, 10, 16)."""

    def _at(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> _dt.datetime:
        return _dt.datetime(year, month, day, hour, minute, tzinfo=shanghai)

    return _at
