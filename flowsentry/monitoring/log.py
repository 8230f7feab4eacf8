"""Per-pass tallies and the scheduler execution log."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..persistence.models import ExecutionStatus, SchedulerExecution


class ScheduleType:
    RETRY = "retry_monitoring"
    OVERDUE = "overdue_monitoring"
    RESOURCE_SYNC = "resource_sync"
    SCHEDULED_IMPORT = "scheduled_import"


class CheckTally(BaseModel):
    """Counts gathered while one check pass walks its items."""

    total_items: int = 0
    success_count: int = 0
    failed_count: int = 0
    errors: list[str] = Field(default_factory=list)

    def succeeded(self) -> None:
        self.total_items += 1
        self.success_count += 1

    def skipped(self) -> None:
        self.total_items += 1

    def failed(self, message: str) -> None:
        self.total_items += 1
        self.failed_count += 1
        self.errors.append(message)

    @property
    def status(self) -> str:
        if self.success_count:
            return ExecutionStatus.SUCCESS
        if self.failed_count:
            return ExecutionStatus.FAILED
        return ExecutionStatus.SKIPPED

    def summary(self) -> str:
        return (
            f"{self.total_items} due, {self.success_count} succeeded, "
            f"{self.failed_count} failed"
        )


def execution_record(
    schedule_type: str,
    tally: Optional[CheckTally],
    started_at: datetime,
    completed_at: datetime,
    duration_ms: int,
    error: Optional[str] = None,
) -> SchedulerExecution:
    """Build the log entry for one check pass; ``error`` marks a failed pass."""
    if error is not None:
        return SchedulerExecution(
            schedule_type=schedule_type,
            status=ExecutionStatus.FAILED,
            total_items=tally.total_items if tally else 0,
            success_count=tally.success_count if tally else 0,
            failed_count=(tally.failed_count if tally else 0) + 1,
            error_message=error,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
        )
    tally = tally or CheckTally()
    return SchedulerExecution(
        schedule_type=schedule_type,
        status=tally.status,
        total_items=tally.total_items,
        success_count=tally.success_count,
        failed_count=tally.failed_count,
        message=tally.summary(),
        error_message="; ".join(tally.errors) or None,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=duration_ms,
    )
