"""Background monitoring of waiting steps, deadlines, resources and imports."""

from .imports import ScheduledImportCheck, next_run_time
from .log import CheckTally, ScheduleType
from .overdue import OverdueCheck
from .retry import RetryCheck
from .scheduler import MonitoringCheck, MonitoringScheduler
from .sync import ResourceSyncCheck

__all__ = [
    "CheckTally",
    "MonitoringCheck",
    "MonitoringScheduler",
    "OverdueCheck",
    "ResourceSyncCheck",
    "RetryCheck",
    "ScheduleType",
    "ScheduledImportCheck",
    "next_run_time",
]
