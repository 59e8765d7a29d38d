from __future__ import annotations

import logging
from functools import partial

from kline_sync.context import Context
from kline_sync.models import Entity, Granularity, MarketClock, SyncMode, SyncWindow
from kline_sync.services import Services
from kline_sync.tasks import Task


logger = logging.getLogger(__name__)


def sync_entity(
    services: Services,
    entity_id: str,
    granularity: Granularity,
    clock: MarketClock,
    ctx: Context,
) -> SyncWindow:
    """
    Plan and apply one incremental sync for (entity, granularity).

    REFRESH_CURRENT_PERIOD deletes the open-period record by its exact key
    before writing the fresh snapshot; RANGE_FETCH upserts the whole window.
    """
    window = services.policy.plan(entity_id, granularity, clock)
    logger.debug("kline: plan %s", window.describe())

    if window.mode is SyncMode.SKIP:
        return window

    ctx.check()
    if window.mode is SyncMode.REFRESH_CURRENT_PERIOD:
        services.repository.delete(entity_id, window.delete_date, granularity)
        rows = services.collector.fetch_current_period(entity_id, granularity, clock, ctx=ctx)
    else:
        rows = services.collector.fetch(entity_id, window, ctx=ctx)

    ctx.check()
    written = services.repository.upsert_batch(granularity, rows)
    logger.debug("kline: %s %s wrote %d rows", entity_id, granularity.value, written)

    if granularity is Granularity.DAILY:
        services.policy.check_inactive(entity_id, clock)
    return window


def _run(services: Services, entity_id: str, granularity: Granularity, clock: MarketClock, ctx: Context) -> None:
    sync_entity(services, entity_id, granularity, clock, ctx)


def build_kline_tasks(
    services: Services,
    entities: list[Entity],
    clock: MarketClock,
    *,
    granularity: Granularity,
) -> list[Task]:
    return [
        Task(
            id=f"{granularity.value}:{e.ts_code}",
            description=f"sync {granularity.value} k-lines for {e.ts_code} {e.name}".rstrip(),
            operation=partial(_run, services, e.ts_code, granularity, clock),
        )
        for e in entities
    ]
