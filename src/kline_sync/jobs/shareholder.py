from __future__ import annotations

import logging
from functools import partial

from kline_sync.context import Context
from kline_sync.models import Entity, MarketClock
from kline_sync.services import Services
from kline_sync.tasks import Task


logger = logging.getLogger(__name__)


TABLE = "shareholder_counts"


def sync_shareholders(services: Services, entity_id: str, ctx: Context) -> int:
    df = services.collector.fetch_shareholders(entity_id, ctx=ctx)
    ctx.check()
    if df is not None and not df.empty and "holder_num" in df.columns:
        # Rows announced without a count carry no information.
        df = df.dropna(subset=["holder_num"])
    n = services.repository.upsert_reports(TABLE, df)
    logger.debug("shareholder: %s wrote %d rows", entity_id, n)
    return n


def _run(services: Services, entity_id: str, ctx: Context) -> None:
    sync_shareholders(services, entity_id, ctx)


def build_shareholder_tasks(services: Services, entities: list[Entity], clock: MarketClock) -> list[Task]:
    return [
        Task(
            id=f"shareholder:{e.ts_code}",
            description=f"sync shareholder counts for {e.ts_code}",
            operation=partial(_run, services, e.ts_code),
        )
        for e in entities
    ]
