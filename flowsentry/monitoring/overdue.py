"""One-time overdue notification for long running runs."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ..errors import CheckItemError
from ..graph import OverdueConfig, StartData
from ..notify import Notifier
from ..persistence.models import ExecutionRun, RunStatus
from ..persistence.repository import WorkflowRepository
from ..utils.time import minutes_between
from .log import CheckTally, ScheduleType

logger = logging.getLogger(__name__)


class OverdueCheck:
    """Notify once when a running run outlives its start node's deadline."""

    schedule_type = ScheduleType.OVERDUE

    def __init__(self, repository: WorkflowRepository, notifier: Notifier) -> None:
        self.repository = repository
        self.notifier = notifier

    async def run(self, now: datetime) -> CheckTally:
        tally = CheckTally()
        runs = [
            run
            for run in await self.repository.list_runs(status=RunStatus.RUNNING)
            if not run.overdue_notified
        ]
        logger.info(f"Overdue check: {len(runs)} running runs not yet notified")
        configs: dict[str, Optional[OverdueConfig]] = {}
        for run in runs:
            try:
                config = await self._overdue_config(run, configs)
                if config is None or not config.enabled:
                    continue
                threshold = config.threshold_minutes
                if threshold <= 0:
                    continue
                if minutes_between(run.started_at, now) < threshold:
                    continue
                if not await self.repository.claim_run_overdue(run.id, now, threshold):
                    logger.info(f"Overdue notice for run {run.id} already claimed")
                    tally.skipped()
                    continue
                logger.info(f"Run {run.id} is overdue (threshold {threshold} min)")
                await self.notifier.send_overdue(run, config.escalation_config)
            except Exception as exc:
                logger.error(f"Overdue handling for run {run.id} failed: {exc}")
                tally.failed(f"run {run.id}: {exc}")
                continue
            tally.succeeded()
        return tally

    async def _overdue_config(
        self, run: ExecutionRun, cache: dict[str, Optional[OverdueConfig]]
    ) -> Optional[OverdueConfig]:
        if not run.graph_ref:
            return None
        if run.graph_ref not in cache:
            definition = await self.repository.get_definition(run.graph_ref)
            if definition is None:
                raise CheckItemError(f"Workflow definition {run.graph_ref} not found")
            start = definition.to_graph().start_node()
            data = start.data if start else None
            cache[run.graph_ref] = data.overdue_config if isinstance(data, StartData) else None
        return cache[run.graph_ref]
