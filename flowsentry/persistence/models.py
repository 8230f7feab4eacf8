"""Persisted records for workflow runs, steps and scheduler bookkeeping."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from ..graph import ValidationConfig, WorkflowGraph
from ..utils.time import utcnow


def new_id() -> str:
    return uuid4().hex


class RunStatus:
    RUNNING = "Running"
    WAITING = "Waiting"
    COMPLETED = "Completed"
    ERROR = "Error"


class StepStatus:
    RUNNING = "Running"
    WAITING = "Waiting"
    COMPLETED = "Completed"
    ERROR = "Error"
    UNKNOWN_STEP_TYPE = "UnknownStepType"


class SyncStatus:
    IDLE = "Idle"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class ExecutionStatus:
    RUNNING = "Running"
    SUCCESS = "Success"
    SKIPPED = "Skipped"
    FAILED = "Failed"


class WorkflowDefinition(SQLModel, table=True):
    """Stored workflow graph referenced by runs."""

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = ""
    graph: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    def to_graph(self) -> WorkflowGraph:
        return WorkflowGraph.model_validate(self.graph or {})


class ExecutionRun(SQLModel, table=True):
    """One execution instance of a workflow graph. Never deleted."""

    id: str = Field(default_factory=new_id, primary_key=True)
    graph_ref: Optional[str] = Field(default=None, index=True)
    status: str = Field(default=RunStatus.RUNNING, index=True)
    current_step: int = 0
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    ended_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    error_message: Optional[str] = None
    overdue_notified: bool = False
    overdue_notified_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    overdue_threshold_minutes: Optional[int] = None
    initiated_by: Optional[str] = None
    input_data: dict = Field(default_factory=dict, sa_column=Column(JSON))


class StepExecution(SQLModel, table=True):
    """One visit to a node within a run.

    A ``Waiting`` row is the persisted suspend point of a ``waitReply`` node.
    """

    id: str = Field(default_factory=new_id, primary_key=True)
    run_id: str = Field(foreign_key="executionrun.id", index=True)
    step_index: int = 0
    node_id: str = ""
    node_type: Optional[str] = None
    task_name: Optional[str] = None
    status: str = Field(default=StepStatus.RUNNING, index=True)
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    ended_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    retry_count: int = 0
    last_retry_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    escalation_sent: bool = False
    escalation_sent_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    validation_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    waiting_for_user: Optional[str] = None
    output: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    def validation(self) -> Optional[ValidationConfig]:
        if not self.validation_config:
            return None
        return ValidationConfig.model_validate(self.validation_config)


class ProcessVariable(SQLModel, table=True):
    """Typed variable value scoped to a run."""

    run_id: str = Field(primary_key=True)
    name: str = Field(primary_key=True)
    data_type: str = "string"
    value: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    set_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class NotificationRecord(SQLModel, table=True):
    """Outcome of a retry, escalation, overdue or prompt dispatch."""

    id: str = Field(default_factory=new_id, primary_key=True)
    run_id: str = Field(index=True)
    step_id: Optional[str] = None
    reason: str
    recipients: list = Field(default_factory=list, sa_column=Column(JSON))
    sent_count: int = 0
    failed_count: int = 0
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class SchedulerExecution(SQLModel, table=True):
    """Summary of one scheduler check pass (the execution log)."""

    id: str = Field(default_factory=new_id, primary_key=True)
    schedule_type: str = Field(index=True)
    related_id: Optional[str] = None
    status: str
    total_items: int = 0
    success_count: int = 0
    failed_count: int = 0
    message: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    duration_ms: Optional[int] = None


class SyncResource(SQLModel, table=True):
    """External data source that is periodically synchronised."""

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = ""
    source_type: str = ""
    source_config: dict = Field(default_factory=dict, sa_column=Column(JSON))
    is_scheduled: bool = False
    update_interval_minutes: Optional[int] = None
    sync_status: str = SyncStatus.IDLE
    sync_started_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    sync_completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_sync_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    sync_error: Optional[str] = None
    total_records: int = 0
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_deleted: int = 0
    records_skipped: int = 0

    def reset_progress(self) -> None:
        self.records_processed = 0
        self.records_inserted = 0
        self.records_updated = 0
        self.records_deleted = 0
        self.records_skipped = 0


class ImportSchedule(SQLModel, table=True):
    """Recurring contact import definition."""

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = ""
    import_type: str = ""
    schedule_type: str = "interval"
    interval_minutes: Optional[int] = None
    cron_expression: Optional[str] = None
    is_active: bool = True
    status: str = "Active"
    next_run_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_run_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    source_config: dict = Field(default_factory=dict, sa_column=Column(JSON))
    field_mapping: dict = Field(default_factory=dict, sa_column=Column(JSON))


class ImportExecution(SQLModel, table=True):
    """One execution of an :class:`ImportSchedule`."""

    id: str = Field(default_factory=new_id, primary_key=True)
    schedule_id: str = Field(index=True)
    status: str = ExecutionStatus.RUNNING
    total_records: int = 0
    success_count: int = 0
    failed_count: int = 0
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
