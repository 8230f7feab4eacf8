"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any, Dict, Optional, TypeVar

from sqlmodel import SQLModel

from ..utils.time import utcnow
from .models import (
    ExecutionRun,
    ImportExecution,
    ImportSchedule,
    NotificationRecord,
    ProcessVariable,
    SchedulerExecution,
    StepExecution,
    StepStatus,
    SyncResource,
    WorkflowDefinition,
)
from .repository import WorkflowRepository

RecordT = TypeVar("RecordT", bound=SQLModel)


def _clone(record: RecordT) -> RecordT:
    return type(record)(**copy.deepcopy(record.model_dump()))


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored records are copies, so callers
    only see each other's changes through the ``save_*`` and ``claim_*``
    methods, as they would with a database.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._runs: Dict[str, ExecutionRun] = {}
        self._steps: Dict[str, StepExecution] = {}
        self._variables: Dict[tuple[str, str], ProcessVariable] = {}
        self._notifications: list[NotificationRecord] = []
        self._scheduler_executions: list[SchedulerExecution] = []
        self._resources: Dict[str, SyncResource] = {}
        self._import_schedules: Dict[str, ImportSchedule] = {}
        self._import_executions: Dict[str, ImportExecution] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        self._definitions[definition.id] = _clone(definition)
        return definition

    async def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        definition = self._definitions.get(definition_id)
        return _clone(definition) if definition else None

    # ------------------------------------------------------------------
    async def create_run(self, run: ExecutionRun) -> ExecutionRun:
        self._runs[run.id] = _clone(run)
        return run

    async def save_run_progress(self, run: ExecutionRun) -> None:
        async with self._lock:
            stored = self._runs.get(run.id)
            if stored is None:
                return
            stored.status = run.status
            stored.current_step = run.current_step
            stored.ended_at = run.ended_at
            stored.error_message = run.error_message

    async def get_run(self, run_id: str) -> Optional[ExecutionRun]:
        run = self._runs.get(run_id)
        return _clone(run) if run else None

    async def list_runs(self, status: Optional[str] = None) -> list[ExecutionRun]:
        runs = [r for r in self._runs.values() if status is None or r.status == status]
        return [_clone(r) for r in sorted(runs, key=lambda r: r.started_at)]

    async def claim_run_overdue(
        self, run_id: str, now: datetime, threshold_minutes: int
    ) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.overdue_notified:
                return False
            run.overdue_notified = True
            run.overdue_notified_at = now
            run.overdue_threshold_minutes = threshold_minutes
            return True

    # ------------------------------------------------------------------
    async def create_step(self, step: StepExecution) -> StepExecution:
        self._steps[step.id] = _clone(step)
        return step

    async def save_step(self, step: StepExecution) -> None:
        self._steps[step.id] = _clone(step)

    async def get_step(self, step_id: str) -> Optional[StepExecution]:
        step = self._steps.get(step_id)
        return _clone(step) if step else None

    async def list_steps(self, run_id: str) -> list[StepExecution]:
        steps = [s for s in self._steps.values() if s.run_id == run_id]
        return [_clone(s) for s in sorted(steps, key=lambda s: s.step_index)]

    async def list_waiting_steps(self) -> list[StepExecution]:
        return [
            _clone(s)
            for s in self._steps.values()
            if s.status == StepStatus.WAITING and s.validation_config
        ]

    async def claim_step_retry(
        self, step_id: str, expected_retry_count: int, now: datetime
    ) -> bool:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None or step.status != StepStatus.WAITING:
                return False
            if step.retry_count != expected_retry_count:
                return False
            step.retry_count = expected_retry_count + 1
            step.last_retry_at = now
            return True

    async def claim_step_escalation(self, step_id: str, now: datetime) -> bool:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None or step.status != StepStatus.WAITING:
                return False
            if step.escalation_sent:
                return False
            step.escalation_sent = True
            step.escalation_sent_at = now
            return True

    # ------------------------------------------------------------------
    async def set_variable(
        self, run_id: str, name: str, value: Any, data_type: str = "string"
    ) -> ProcessVariable:
        variable = ProcessVariable(
            run_id=run_id, name=name, data_type=data_type, value=value, set_at=utcnow()
        )
        self._variables[(run_id, name)] = _clone(variable)
        return variable

    async def get_variable(self, run_id: str, name: str) -> Optional[ProcessVariable]:
        variable = self._variables.get((run_id, name))
        return _clone(variable) if variable else None

    async def list_variables(self, run_id: str) -> list[ProcessVariable]:
        return [_clone(v) for (rid, _), v in self._variables.items() if rid == run_id]

    # ------------------------------------------------------------------
    async def add_notification(self, record: NotificationRecord) -> None:
        self._notifications.append(_clone(record))

    async def list_notifications(self, run_id: Optional[str] = None) -> list[NotificationRecord]:
        return [
            _clone(n)
            for n in self._notifications
            if run_id is None or n.run_id == run_id
        ]

    async def add_scheduler_execution(self, record: SchedulerExecution) -> None:
        self._scheduler_executions.append(_clone(record))

    async def list_scheduler_executions(
        self, schedule_type: Optional[str] = None
    ) -> list[SchedulerExecution]:
        return [
            _clone(e)
            for e in self._scheduler_executions
            if schedule_type is None or e.schedule_type == schedule_type
        ]

    # ------------------------------------------------------------------
    async def save_resource(self, resource: SyncResource) -> SyncResource:
        self._resources[resource.id] = _clone(resource)
        return resource

    async def get_resource(self, resource_id: str) -> Optional[SyncResource]:
        resource = self._resources.get(resource_id)
        return _clone(resource) if resource else None

    async def list_scheduled_resources(self) -> list[SyncResource]:
        return [_clone(r) for r in self._resources.values() if r.is_scheduled]

    # ------------------------------------------------------------------
    async def save_import_schedule(self, schedule: ImportSchedule) -> ImportSchedule:
        self._import_schedules[schedule.id] = _clone(schedule)
        return schedule

    async def get_import_schedule(self, schedule_id: str) -> Optional[ImportSchedule]:
        schedule = self._import_schedules.get(schedule_id)
        return _clone(schedule) if schedule else None

    async def list_due_import_schedules(self, now: datetime) -> list[ImportSchedule]:
        due = [
            s
            for s in self._import_schedules.values()
            if s.is_active
            and s.status == "Active"
            and s.next_run_at is not None
            and s.next_run_at <= now
        ]
        return [_clone(s) for s in sorted(due, key=lambda s: s.next_run_at)]

    async def save_import_execution(self, execution: ImportExecution) -> None:
        self._import_executions[execution.id] = _clone(execution)

    async def list_import_executions(self, schedule_id: str) -> list[ImportExecution]:
        executions = [
            e for e in self._import_executions.values() if e.schedule_id == schedule_id
        ]
        return [_clone(e) for e in sorted(executions, key=lambda e: e.started_at)]
