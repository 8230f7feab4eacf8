"""Periodic synchronisation of external data resources."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Mapping

from ..config import MonitoringConfig
from ..contracts import SyncStrategy
from ..persistence.models import SyncResource, SyncStatus
from ..persistence.repository import WorkflowRepository
from ..utils.time import minutes_between
from .log import CheckTally, ScheduleType

logger = logging.getLogger(__name__)


class ResourceSyncCheck:
    """Run the registered sync strategy for every due resource, one at a time.

    Strategies are looked up by upper-cased ``source_type`` (``SQL``,
    ``EXCEL``, ``GOOGLE_DOCS`` or whatever the host registers).
    """

    schedule_type = ScheduleType.RESOURCE_SYNC

    def __init__(
        self,
        repository: WorkflowRepository,
        strategies: Mapping[str, SyncStrategy],
        config: MonitoringConfig,
    ) -> None:
        self.repository = repository
        self.strategies = {key.upper(): value for key, value in strategies.items()}
        self.config = config

    def is_due(self, resource: SyncResource, now: datetime) -> bool:
        interval = resource.update_interval_minutes
        if interval is None:
            interval = self.config.default_sync_interval_minutes
        if interval <= 0:
            return False
        if resource.sync_status == SyncStatus.RUNNING:
            logger.info(f"Resource {resource.id} is already syncing, skipping")
            return False
        if resource.last_sync_at is None:
            return True
        return minutes_between(resource.last_sync_at, now) >= interval

    async def run(self, now: datetime) -> CheckTally:
        tally = CheckTally()
        resources = await self.repository.list_scheduled_resources()
        logger.info(f"Resource sync check: {len(resources)} scheduled resources")
        for resource in resources:
            if not self.is_due(resource, now):
                continue
            try:
                synced = await self._sync(resource, now)
            except Exception as exc:
                logger.error(f"Sync bookkeeping for resource {resource.id} failed: {exc}")
                tally.failed(f"resource {resource.id}: {exc}")
                continue
            if synced:
                tally.succeeded()
            else:
                tally.failed(f"resource {resource.id}: {resource.sync_error}")
        return tally

    async def _sync(self, resource: SyncResource, now: datetime) -> bool:
        resource.sync_status = SyncStatus.RUNNING
        resource.sync_started_at = now
        resource.sync_completed_at = None
        resource.sync_error = None
        resource.reset_progress()
        await self.repository.save_resource(resource)

        strategy = self.strategies.get((resource.source_type or "").upper())
        try:
            if strategy is None:
                raise LookupError(f"Unsupported source type {resource.source_type!r}")
            logger.info(f"Syncing resource {resource.name} ({resource.id})")
            result = await strategy(resource)
        except Exception as exc:
            logger.error(f"Sync of resource {resource.id} failed: {exc}")
            resource.sync_status = SyncStatus.FAILED
            resource.sync_error = str(exc)
            resource.reset_progress()
            succeeded = False
        else:
            resource.sync_status = SyncStatus.COMPLETED
            resource.total_records = result.total_records
            resource.records_processed = result.records_processed
            resource.records_inserted = result.records_inserted
            resource.records_updated = result.records_updated
            resource.records_deleted = result.records_deleted
            resource.records_skipped = result.records_skipped
            logger.info(
                f"Resource {resource.id} synced, {result.total_records} records"
            )
            succeeded = True
        resource.sync_started_at = None
        resource.sync_completed_at = now
        resource.last_sync_at = now
        await self.repository.save_resource(resource)
        return succeeded
