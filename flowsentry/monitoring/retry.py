"""Retry and escalation of unanswered ``waitReply`` steps."""

from __future__ import annotations

import logging
from datetime import datetime

from ..config import MonitoringConfig
from ..errors import CheckItemError
from ..graph import ValidationConfig
from ..notify import Notifier
from ..persistence.models import StepExecution
from ..persistence.repository import WorkflowRepository
from ..utils.time import minutes_between
from .log import CheckTally, ScheduleType

logger = logging.getLogger(__name__)


class RetryCheck:
    """Re-send the prompt of a waiting step, then escalate once.

    A step is due when ``retry interval`` minutes have passed since its last
    retry (or since it started waiting). Each action is claimed in the
    repository before anything is sent, so overlapping passes fire it once.
    """

    schedule_type = ScheduleType.RETRY

    def __init__(
        self,
        repository: WorkflowRepository,
        notifier: Notifier,
        config: MonitoringConfig,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.config = config

    async def run(self, now: datetime) -> CheckTally:
        tally = CheckTally()
        steps = await self.repository.list_waiting_steps()
        logger.info(f"Retry check: {len(steps)} waiting steps with validation")
        for step in steps:
            validation = step.validation()
            if validation is None or not validation.is_time_based:
                continue
            interval = validation.retry_interval_total_minutes
            if interval <= 0:
                continue
            last_activity = step.last_retry_at or step.started_at
            elapsed = minutes_between(last_activity, now)
            logger.debug(
                f"Step {step.id}: {elapsed:.1f} min since last activity, "
                f"interval {interval}, retried {step.retry_count}"
            )
            if elapsed < interval:
                continue
            try:
                fired = await self._process(step, validation, now)
            except Exception as exc:
                logger.error(f"Retry handling for step {step.id} failed: {exc}")
                tally.failed(f"step {step.id}: {exc}")
                continue
            if fired:
                tally.succeeded()
            else:
                tally.skipped()
        return tally

    async def _process(
        self, step: StepExecution, validation: ValidationConfig, now: datetime
    ) -> bool:
        run = await self.repository.get_run(step.run_id)
        if run is None:
            raise CheckItemError(f"Run {step.run_id} for step {step.id} not found")
        limit = (
            validation.retry_limit
            if validation.retry_limit is not None
            else self.config.default_retry_limit
        )
        if step.retry_count < limit:
            if not await self.repository.claim_step_retry(step.id, step.retry_count, now):
                logger.info(f"Retry {step.retry_count + 1} of step {step.id} already claimed")
                return False
            logger.info(f"Sending retry {step.retry_count + 1}/{limit} for step {step.id}")
            await self.notifier.send_retry(step, run, validation.retry_message_config)
            return True
        if not step.escalation_sent and validation.escalation_config is not None:
            if not await self.repository.claim_step_escalation(step.id, now):
                logger.info(f"Escalation of step {step.id} already claimed")
                return False
            logger.info(f"Retry limit {limit} reached, escalating step {step.id}")
            await self.notifier.send_escalation(step, run, validation.escalation_config)
            return True
        return False
