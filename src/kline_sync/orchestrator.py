"""Job orchestration.

Each job run walks the same state machine:

    IDLE -> LOAD_ENTITIES -> BUILD_TASKS -> RUN_BATCH -> REPORT_STATS -> IDLE

The trading calendar is consulted once per run; the resulting MarketClock is
handed to every task of that run. Per-task failures are counted, never raised.
Failures before the batch starts (entity universe or repository unavailable)
abort the job with FatalJobError.
"""

from __future__ import annotations

import datetime as _dt
import enum
import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import Callable

from kline_sync.config import NIGHTLY_ORDER, AppConfig
from kline_sync.context import Context
from kline_sync.errors import FatalJobError
from kline_sync.executor import TaskExecutor
from kline_sync.jobs.kline import build_kline_tasks
from kline_sync.jobs.performance import build_performance_tasks
from kline_sync.jobs.shareholder import build_shareholder_tasks
from kline_sync.jobs.stock_list import build_stock_list_tasks
from kline_sync.models import Entity, Granularity, MarketClock, SyncWindow
from kline_sync.services import Services
from kline_sync.stats import JobReport
from kline_sync.tasks import ExecutionStats, Task, utc_now


logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    IDLE = "idle"
    LOAD_ENTITIES = "load_entities"
    BUILD_TASKS = "build_tasks"
    RUN_BATCH = "run_batch"
    REPORT_STATS = "report_stats"


class EntityScope(str, enum.Enum):
    NONE = "none"
    ALL = "all"
    ACTIVE = "active"


TaskBuilder = Callable[[Services, list[Entity], MarketClock], list[Task]]


@dataclass(frozen=True)
class JobKind:
    name: str
    description: str
    scope: EntityScope
    build_tasks: TaskBuilder


JOB_KINDS: dict[str, JobKind] = {
    k.name: k
    for k in (
        JobKind("stock_list", "refresh the stock universe", EntityScope.NONE, build_stock_list_tasks),
        # Daily includes inactive codes so a resumed listing is picked up again.
        JobKind(
            "kline_daily",
            "daily k-lines",
            EntityScope.ALL,
            partial(build_kline_tasks, granularity=Granularity.DAILY),
        ),
        JobKind(
            "kline_weekly",
            "weekly k-lines",
            EntityScope.ACTIVE,
            partial(build_kline_tasks, granularity=Granularity.WEEKLY),
        ),
        JobKind(
            "kline_monthly",
            "monthly k-lines",
            EntityScope.ACTIVE,
            partial(build_kline_tasks, granularity=Granularity.MONTHLY),
        ),
        JobKind(
            "kline_yearly",
            "yearly k-lines",
            EntityScope.ACTIVE,
            partial(build_kline_tasks, granularity=Granularity.YEARLY),
        ),
        JobKind("performance", "financial indicator reports", EntityScope.ACTIVE, build_performance_tasks),
        JobKind("shareholder", "shareholder counts", EntityScope.ACTIVE, build_shareholder_tasks),
    )
}


@dataclass(frozen=True)
class CronSpec:
    """5-field crontab expression evaluated in `timezone`."""

    expression: str
    timezone: str


@dataclass(frozen=True)
class JobDefinition:
    name: str
    trigger: CronSpec
    handler: Callable[[], object]
    description: str


class Orchestrator:
    def __init__(
        self,
        config: AppConfig,
        services: Services,
        *,
        now: Callable[[], _dt.datetime] | None = None,
    ) -> None:
        self.config = config
        self.services = services
        self._now = now
        self._lock = threading.Lock()
        self._states: dict[str, JobState] = {}

    # -- state ---------------------------------------------------------------------

    def state(self, job: str) -> JobState:
        with self._lock:
            return self._states.get(job, JobState.IDLE)

    def _set_state(self, job: str, state: JobState) -> None:
        with self._lock:
            self._states[job] = state
        logger.debug("%s: state -> %s", job, state.value)

    def clock(self) -> MarketClock:
        return self.services.calendar.clock(self._now() if self._now else None)

    # -- schedule ------------------------------------------------------------------

    def build_schedule(self) -> list[JobDefinition]:
        """Jobs with a cron expression in config, in a stable order."""
        out: list[JobDefinition] = []
        tz = self.config.calendar.timezone
        for name in ("stock_list",) + NIGHTLY_ORDER + ("nightly",):
            job_cfg = self.config.job(name)
            if not job_cfg.enabled or not job_cfg.cron:
                continue
            description = "nightly sequence: " + " -> ".join(NIGHTLY_ORDER) if name == "nightly" else JOB_KINDS[name].description
            out.append(
                JobDefinition(
                    name=name,
                    trigger=CronSpec(job_cfg.cron, tz),
                    handler=partial(self.run_scheduled, name),
                    description=description,
                )
            )
        return out

    def run_scheduled(self, name: str) -> None:
        """Scheduler entry point: fatal errors are already logged and reported."""
        try:
            self.run_job(name)
        except FatalJobError:
            logger.error("%s: scheduled run aborted", name)

    # -- running -------------------------------------------------------------------

    def run_job(self, name: str, ctx: Context | None = None) -> list[JobReport]:
        if name == "nightly":
            return self.nightly(ctx)
        if name not in JOB_KINDS:
            raise ValueError(f"Unknown job: {name!r} (expected one of {sorted(JOB_KINDS) + ['nightly']})")
        report = self._run(JOB_KINDS[name], ctx or Context.background())
        return [] if report is None else [report]

    def nightly(self, ctx: Context | None = None) -> list[JobReport]:
        """
        Run the nightly sequence. A fatal step does not stop later steps; the
        first fatal error is re-raised once the sequence is over.
        """
        ctx = ctx or Context.background()
        reports: list[JobReport] = []
        fatal: list[FatalJobError] = []
        for name in NIGHTLY_ORDER:
            if ctx.done:
                logger.warning("nightly: cancelled before %s", name)
                break
            try:
                report = self._run(JOB_KINDS[name], ctx)
            except FatalJobError as e:
                fatal.append(e)
                continue
            if report is not None:
                reports.append(report)
        if fatal:
            raise fatal[0]
        return reports

    def _load_entities(self, kind: JobKind) -> tuple[list[Entity], int]:
        if kind.scope is EntityScope.NONE:
            return [], 0
        entities = self.services.repository.list_entities()
        if kind.scope is EntityScope.ALL:
            return entities, 0
        active = [e for e in entities if e.is_active]
        return active, len(entities) - len(active)

    def _run(self, kind: JobKind, ctx: Context) -> JobReport | None:
        name = kind.name
        job_cfg = self.config.job(name)
        if not job_cfg.enabled:
            logger.info("%s: disabled in config, skipping", name)
            return None

        started = utc_now()
        clock = self.clock()
        if job_cfg.trading_days_only and not clock.is_trading_day:
            logger.info("%s: %s is not a trading day, skipping", name, clock.today.isoformat())
            return None

        entities: list[Entity] = []
        skipped = 0
        try:
            self._set_state(name, JobState.LOAD_ENTITIES)
            entities, skipped = self._load_entities(kind)
            if kind.scope is not EntityScope.NONE and not entities:
                logger.warning("%s: no entities to sync (run stock_list first?)", name)

            self._set_state(name, JobState.BUILD_TASKS)
            tasks = kind.build_tasks(self.services, entities, clock)
        except Exception as e:  # noqa: BLE001 - anything before the batch is fatal
            logger.critical("%s: setup failed: %s", name, e, exc_info=True)
            report = JobReport(
                job=name,
                started_at=started,
                finished_at=utc_now(),
                entities=len(entities),
                skipped_inactive=skipped,
                stats=ExecutionStats.empty(started),
                fatal_error=f"{type(e).__name__}: {e}",
            )
            self._report(report)
            self._set_state(name, JobState.IDLE)
            raise FatalJobError(f"{name}: {e}") from e

        logger.info(
            "%s: start (entities=%d, skipped_inactive=%d, tasks=%d, concurrency=%d, today=%s, trading_day=%s, session_closed=%s)",
            name,
            len(entities),
            skipped,
            len(tasks),
            job_cfg.concurrency,
            clock.today.isoformat(),
            clock.is_trading_day,
            clock.session_closed,
        )

        self._set_state(name, JobState.RUN_BATCH)
        try:
            with TaskExecutor(
                job_cfg.concurrency,
                job_cfg.task_timeout,
                name=name,
                show_progress=job_cfg.show_progress,
            ) as executor:
                _results, stats = executor.execute_batch(
                    tasks,
                    ctx,
                    batch_timeout=job_cfg.batch_timeout,
                    max_retries=job_cfg.max_retries,
                    retry_delay=job_cfg.retry_delay,
                )
        except BaseException:
            self._set_state(name, JobState.IDLE)
            raise

        self._set_state(name, JobState.REPORT_STATS)
        report = JobReport(
            job=name,
            started_at=started,
            finished_at=utc_now(),
            entities=len(entities),
            skipped_inactive=skipped,
            stats=stats,
        )
        self._report(report)
        self._set_state(name, JobState.IDLE)
        return report

    def _report(self, report: JobReport) -> None:
        try:
            self.services.repository.record_job_run(report)
        except Exception:  # noqa: BLE001
            logger.warning("%s: could not record job run", report.job, exc_info=True)
        try:
            self.services.notifier.send(report.summary())
        except Exception:  # noqa: BLE001
            logger.error("%s: notifier delivery failed", report.job, exc_info=True)

    # -- inspection ----------------------------------------------------------------

    def plan(self, entity_id: str, granularity: Granularity | str) -> SyncWindow:
        return self.services.policy.plan(entity_id, Granularity.parse(granularity), self.clock())
