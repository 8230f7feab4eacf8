"""flowsentry: graph workflow execution with retry, escalation and overdue monitoring."""

from .conditions import ConditionEvaluator
from .config import FlowSentryConfig, MonitoringConfig, load_config
from .contracts import ActionDispatcher, LoggingActionDispatcher, RunContext
from .execute import GraphExecutor
from .graph import WorkflowGraph
from .monitoring import MonitoringScheduler
from .notify import DefaultRecipientResolver
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "ActionDispatcher",
    "ConditionEvaluator",
    "DefaultRecipientResolver",
    "FlowSentryConfig",
    "GraphExecutor",
    "LoggingActionDispatcher",
    "MonitoringConfig",
    "MonitoringScheduler",
    "RunContext",
    "WorkflowGraph",
    "get_repository",
    "load_config",
]
