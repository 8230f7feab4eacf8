"""Scheduled imports and next-run computation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Mapping, Optional

from croniter import croniter

from ..contracts import Importer
from ..persistence.models import ExecutionStatus, ImportExecution, ImportSchedule
from ..persistence.repository import WorkflowRepository
from .log import CheckTally, ScheduleType

logger = logging.getLogger(__name__)


def next_run_time(schedule: ImportSchedule, now: datetime) -> Optional[datetime]:
    """Return when ``schedule`` should run next, or ``None`` if it cannot tell."""
    kind = (schedule.schedule_type or "").lower()
    if kind == "interval":
        if not schedule.interval_minutes or schedule.interval_minutes <= 0:
            return None
        return now + timedelta(minutes=schedule.interval_minutes)
    if kind == "daily":
        return now + timedelta(days=1)
    if kind == "weekly":
        return now + timedelta(days=7)
    if kind == "cron":
        expression = (schedule.cron_expression or "").strip()
        if not expression or not croniter.is_valid(expression):
            logger.warning(f"Schedule {schedule.id} has invalid cron {expression!r}")
            return None
        return croniter(expression, now).get_next(datetime)
    logger.warning(f"Schedule {schedule.id} has unknown type {schedule.schedule_type!r}")
    return None


class ScheduledImportCheck:
    """Run every active import whose ``next_run_at`` has passed.

    The schedule is advanced after every attempt, failed ones included, so a
    broken import is retried on its next slot rather than on every tick.
    """

    schedule_type = ScheduleType.SCHEDULED_IMPORT

    def __init__(
        self, repository: WorkflowRepository, importers: Mapping[str, Importer]
    ) -> None:
        self.repository = repository
        self.importers = dict(importers)

    async def run(self, now: datetime) -> CheckTally:
        tally = CheckTally()
        schedules = await self.repository.list_due_import_schedules(now)
        logger.info(f"Scheduled import check: {len(schedules)} due schedules")
        for schedule in schedules:
            try:
                execution = await self._execute(schedule, now)
                schedule.last_run_at = now
                schedule.next_run_at = next_run_time(schedule, now)
                await self.repository.save_import_schedule(schedule)
            except Exception as exc:
                logger.error(f"Import bookkeeping for schedule {schedule.id} failed: {exc}")
                tally.failed(f"schedule {schedule.id}: {exc}")
                continue
            logger.info(
                f"Import {schedule.name} finished with {execution.status}, "
                f"next run {schedule.next_run_at}"
            )
            if execution.status == ExecutionStatus.SUCCESS:
                tally.succeeded()
            else:
                tally.failed(f"schedule {schedule.id}: {execution.error_message}")
        return tally

    async def _execute(self, schedule: ImportSchedule, now: datetime) -> ImportExecution:
        execution = ImportExecution(
            schedule_id=schedule.id, status=ExecutionStatus.RUNNING, started_at=now
        )
        await self.repository.save_import_execution(execution)
        importer = self.importers.get(schedule.import_type)
        try:
            if importer is None:
                raise LookupError(f"No importer for import type {schedule.import_type!r}")
            result = await importer(schedule)
        except Exception as exc:
            logger.error(f"Import {schedule.id} failed: {exc}")
            execution.status = ExecutionStatus.FAILED
            execution.error_message = str(exc)
        else:
            execution.total_records = result.total_records
            execution.success_count = result.success_count
            execution.failed_count = result.failed_count
            execution.error_message = result.error_message
            execution.status = (
                ExecutionStatus.FAILED if result.error_message else ExecutionStatus.SUCCESS
            )
        execution.completed_at = now
        await self.repository.save_import_execution(execution)
        return execution
