"""Background loop running the monitoring checks on a fixed interval."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Mapping, Optional, Protocol

from ..config import MonitoringConfig
from ..contracts import ActionDispatcher, Importer, RecipientResolver, SyncStrategy
from ..errors import CheckPassError
from ..notify import DefaultRecipientResolver, Notifier
from ..persistence.models import SchedulerExecution
from ..persistence.repository import WorkflowRepository
from ..utils.time import utcnow
from .imports import ScheduledImportCheck
from .log import CheckTally, execution_record
from .overdue import OverdueCheck
from .retry import RetryCheck
from .sync import ResourceSyncCheck

logger = logging.getLogger(__name__)


class MonitoringCheck(Protocol):
    schedule_type: str

    async def run(self, now: datetime) -> CheckTally:
        """Process every due item and return the pass tally."""


class MonitoringScheduler:
    """Single-process monitor for retry, overdue, sync and import work.

    Every tick runs the enabled checks in a fixed order: retry, overdue,
    resource sync, scheduled import. A failing check is logged and recorded
    as a ``Failed`` pass without stopping the ones after it.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        dispatcher: ActionDispatcher,
        resolver: Optional[RecipientResolver] = None,
        config: Optional[MonitoringConfig] = None,
        sync_strategies: Optional[Mapping[str, SyncStrategy]] = None,
        importers: Optional[Mapping[str, Importer]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.config = config or MonitoringConfig()
        self.clock = clock
        self.notifier = Notifier(
            repository, dispatcher, resolver or DefaultRecipientResolver()
        )
        self.checks: list[MonitoringCheck] = []
        if self.config.enable_retry_monitoring:
            self.checks.append(RetryCheck(repository, self.notifier, self.config))
        if self.config.enable_overdue_monitoring:
            self.checks.append(OverdueCheck(repository, self.notifier))
        if self.config.enable_resource_sync:
            self.checks.append(
                ResourceSyncCheck(repository, sync_strategies or {}, self.config)
            )
        if self.config.enable_scheduled_import:
            self.checks.append(ScheduledImportCheck(repository, importers or {}))
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    def start(self) -> asyncio.Task:
        """Start :meth:`run_forever` as a background task on the running loop."""
        if self._task is not None and not self._task.done():
            raise RuntimeError("Monitoring scheduler is already running")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run_forever(self._stop_event))
        return self._task

    async def stop(self) -> None:
        """Signal the loop to stop and wait for the current tick to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        logger.info(
            f"Monitoring scheduler started: interval {self.config.check_interval_seconds}s, "
            f"checks {[c.schedule_type for c in self.checks]}"
        )
        if await self._sleep(stop_event, self.config.initial_delay_seconds):
            return
        while not stop_event.is_set():
            await self.run_once()
            if await self._sleep(stop_event, self.config.check_interval_seconds):
                break
        logger.info("Monitoring scheduler stopped")

    @staticmethod
    async def _sleep(stop_event: asyncio.Event, seconds: float) -> bool:
        """Wait ``seconds``; return ``True`` if the stop event fired first."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Ticks
    async def run_once(self, now: Optional[datetime] = None) -> list[SchedulerExecution]:
        """Run one tick and return the log entry written for each check."""
        now = now or self.clock()
        logger.info(f"Monitoring tick at {now.isoformat()}")
        return [await self._run_check(check, now) for check in self.checks]

    async def _run_check(self, check: MonitoringCheck, now: datetime) -> SchedulerExecution:
        started_at = self.clock()
        started = time.perf_counter()
        try:
            tally = await check.run(now)
        except Exception as exc:
            error = CheckPassError(check.schedule_type, str(exc))
            logger.exception(str(error))
            record = execution_record(
                check.schedule_type,
                None,
                started_at,
                self.clock(),
                int((time.perf_counter() - started) * 1000),
                error=str(error),
            )
        else:
            record = execution_record(
                check.schedule_type,
                tally,
                started_at,
                self.clock(),
                int((time.perf_counter() - started) * 1000),
            )
            logger.info(f"{check.schedule_type}: {record.status}, {tally.summary()}")
        try:
            await self.repository.add_scheduler_execution(record)
        except Exception as exc:
            logger.error(f"Could not record {check.schedule_type} pass: {exc}")
        return record
