from __future__ import annotations

import logging
from functools import partial

from kline_sync.context import Context
from kline_sync.models import Entity, MarketClock
from kline_sync.services import Services
from kline_sync.tasks import Task


logger = logging.getLogger(__name__)


TABLE = "performance_reports"


def sync_performance(services: Services, entity_id: str, ctx: Context) -> int:
    df = services.collector.fetch_performance(entity_id, ctx=ctx)
    ctx.check()
    n = services.repository.upsert_reports(TABLE, df)
    logger.debug("performance: %s wrote %d reports", entity_id, n)
    return n


def _run(services: Services, entity_id: str, ctx: Context) -> None:
    sync_performance(services, entity_id, ctx)


def build_performance_tasks(services: Services, entities: list[Entity], clock: MarketClock) -> list[Task]:
    return [
        Task(
            id=f"performance:{e.ts_code}",
            description=f"sync financial indicators for {e.ts_code}",
            operation=partial(_run, services, e.ts_code),
        )
        for e in entities
    ]
