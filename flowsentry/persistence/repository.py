"""Repository abstraction for workflow and monitoring state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from .models import (
    ExecutionRun,
    ImportExecution,
    ImportSchedule,
    NotificationRecord,
    ProcessVariable,
    SchedulerExecution,
    StepExecution,
    SyncResource,
    WorkflowDefinition,
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Records handed out are detached snapshots: mutating one has no effect until
    it is passed back to a ``save_*`` method. The ``claim_*`` methods are atomic
    compare-and-set updates and return ``True`` only for the caller that won.
    """

    # Definitions -------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert or replace a workflow definition."""

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        """Return a workflow definition by id."""

    # Runs --------------------------------------------------------------
    async def create_run(self, run: ExecutionRun) -> ExecutionRun:
        """Persist a new run."""

    async def save_run_progress(self, run: ExecutionRun) -> None:
        """Write only the executor-owned columns of a run.

        ``status``, ``current_step``, ``ended_at`` and ``error_message`` are
        copied from ``run``; the overdue columns are left to
        :meth:`claim_run_overdue`.
        """

    async def get_run(self, run_id: str) -> Optional[ExecutionRun]:
        """Return a run by id."""

    async def list_runs(self, status: Optional[str] = None) -> list[ExecutionRun]:
        """Return runs, optionally filtered by status, oldest first."""

    async def claim_run_overdue(
        self, run_id: str, now: datetime, threshold_minutes: int
    ) -> bool:
        """Set ``overdue_notified`` if it is still unset."""

    # Steps -------------------------------------------------------------
    async def create_step(self, step: StepExecution) -> StepExecution:
        """Persist a new step."""

    async def save_step(self, step: StepExecution) -> None:
        """Persist the current state of a step."""

    async def get_step(self, step_id: str) -> Optional[StepExecution]:
        """Return a step by id."""

    async def list_steps(self, run_id: str) -> list[StepExecution]:
        """Return the steps of a run ordered by step index."""

    async def list_waiting_steps(self) -> list[StepExecution]:
        """Return every ``Waiting`` step that carries a validation config."""

    async def claim_step_retry(
        self, step_id: str, expected_retry_count: int, now: datetime
    ) -> bool:
        """Increment ``retry_count`` if it still equals ``expected_retry_count``."""

    async def claim_step_escalation(self, step_id: str, now: datetime) -> bool:
        """Set ``escalation_sent`` if it is still unset."""

    # Variables ---------------------------------------------------------
    async def set_variable(
        self, run_id: str, name: str, value: Any, data_type: str = "string"
    ) -> ProcessVariable:
        """Insert or replace a process variable."""

    async def get_variable(self, run_id: str, name: str) -> Optional[ProcessVariable]:
        """Return a process variable by name."""

    async def list_variables(self, run_id: str) -> list[ProcessVariable]:
        """Return all variables of a run."""

    # Notifications and scheduler log ----------------------------------
    async def add_notification(self, record: NotificationRecord) -> None:
        """Append a dispatch outcome."""

    async def list_notifications(self, run_id: Optional[str] = None) -> list[NotificationRecord]:
        """Return dispatch outcomes, optionally for one run."""

    async def add_scheduler_execution(self, record: SchedulerExecution) -> None:
        """Append a scheduler pass summary."""

    async def list_scheduler_executions(
        self, schedule_type: Optional[str] = None
    ) -> list[SchedulerExecution]:
        """Return scheduler pass summaries, oldest first."""

    # Sync resources ----------------------------------------------------
    async def save_resource(self, resource: SyncResource) -> SyncResource:
        """Insert or replace a sync resource."""

    async def get_resource(self, resource_id: str) -> Optional[SyncResource]:
        """Return a sync resource by id."""

    async def list_scheduled_resources(self) -> list[SyncResource]:
        """Return resources with ``is_scheduled`` set."""

    # Import schedules --------------------------------------------------
    async def save_import_schedule(self, schedule: ImportSchedule) -> ImportSchedule:
        """Insert or replace an import schedule."""

    async def get_import_schedule(self, schedule_id: str) -> Optional[ImportSchedule]:
        """Return an import schedule by id."""

    async def list_due_import_schedules(self, now: datetime) -> list[ImportSchedule]:
        """Return active schedules whose ``next_run_at`` is at or before ``now``."""

    async def save_import_execution(self, execution: ImportExecution) -> None:
        """Insert or replace an import execution."""

    async def list_import_executions(self, schedule_id: str) -> list[ImportExecution]:
        """Return the executions of a schedule, oldest first."""
