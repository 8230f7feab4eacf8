"""Exception hierarchy for flowsentry."""

from __future__ import annotations


class FlowSentryError(Exception):
    """Base class for all flowsentry errors."""


class GraphValidationError(FlowSentryError):
    """Raised when a workflow graph violates its structural invariants."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


class GraphTraversalError(FlowSentryError):
    """Unhandled failure while dispatching a node; aborts the run."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(message)


class StepConfigError(FlowSentryError):
    """A node is missing required configuration. Logged, never fatal."""

    def __init__(self, node_id: str, missing: list[str]):
        self.node_id = node_id
        self.missing = missing
        super().__init__(
            f"Node {node_id} is missing required fields: {', '.join(missing)}"
        )


class CheckItemError(FlowSentryError):
    """Failure of a single item inside a scheduler check."""


class CheckPassError(FlowSentryError):
    """Failure of a whole scheduler check pass."""

    def __init__(self, schedule_type: str, message: str):
        self.schedule_type = schedule_type
        super().__init__(f"{schedule_type} check failed: {message}")


class RunNotFoundError(FlowSentryError):
    """Requested execution run does not exist."""


class NoWaitingStepError(FlowSentryError):
    """Resume was requested for a run without a waiting step."""


class RunFailedError(FlowSentryError):
    """Resume was requested for a run that already ended in Error."""
