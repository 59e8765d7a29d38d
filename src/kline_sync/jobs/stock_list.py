from __future__ import annotations

import logging
from functools import partial

from kline_sync.context import Context
from kline_sync.models import Entity, MarketClock
from kline_sync.services import Services
from kline_sync.tasks import Task


logger = logging.getLogger(__name__)


def refresh_stock_list(services: Services, ctx: Context) -> int:
    df = services.collector.fetch_entities(ctx=ctx)
    ctx.check()
    n = services.repository.upsert_entities(df)
    delisted = 0
    if "list_status" in df.columns:
        delisted = int((df["list_status"].astype(str).str.upper() == "D").sum())
    logger.info("stock_list: upserted %d codes (delisted=%d)", n, delisted)
    return n


def _run(services: Services, ctx: Context) -> None:
    refresh_stock_list(services, ctx)


def build_stock_list_tasks(services: Services, entities: list[Entity], clock: MarketClock) -> list[Task]:
    # The universe itself is the payload; there is nothing to fan out over.
    return [Task(id="stock_list", description="refresh stock universe", operation=partial(_run, services))]
