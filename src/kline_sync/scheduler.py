"""Cron triggering for the long-running `serve` mode.

Only this module knows about APScheduler; the orchestrator hands it plain
JobDefinitions.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from kline_sync.orchestrator import JobDefinition


logger = logging.getLogger(__name__)


class Trigger(Protocol):
    def add(self, job: JobDefinition) -> None: ...

    def start(self) -> None: ...

    def shutdown(self) -> None: ...


class CronScheduler:
    def __init__(self, *, timezone: str = "Asia/Shanghai", misfire_grace_time: int = 3600) -> None:
        self.timezone = timezone
        self.misfire_grace_time = int(misfire_grace_time)
        self._scheduler = BackgroundScheduler(timezone=timezone)
        self._stopped = threading.Event()

    def add(self, job: JobDefinition) -> None:
        trigger = CronTrigger.from_crontab(job.trigger.expression, timezone=job.trigger.timezone)
        # One instance per job: a slow nightly run must not overlap the next one.
        self._scheduler.add_job(
            job.handler,
            trigger=trigger,
            id=job.name,
            name=job.description,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.misfire_grace_time,
            replace_existing=True,
        )
        logger.info("scheduler: registered %s (%s %s)", job.name, job.trigger.expression, job.trigger.timezone)

    def jobs(self) -> list[tuple[str, object]]:
        """(job id, next fire time) pairs; next fire time is None until started."""
        return [(j.id, getattr(j, "next_run_time", None)) for j in self._scheduler.get_jobs()]

    def start(self) -> None:
        self._scheduler.start()
        logger.info("scheduler: started with %d job(s)", len(self._scheduler.get_jobs()))

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
            logger.info("scheduler: shut down")
        self._stopped.set()

    def wait(self) -> None:
        """Block the calling thread until shutdown() is called."""
        while not self._stopped.wait(1.0):
            pass
