"""
Workflow engine errors.
"""

from typing import Any


class WorkflowError(Exception):
    """Base class for workflow engine errors."""


class UnknownNode(WorkflowError):
    """An edge or entry point names a node the workflow does not define."""

    def __init__(self, node_id: str, workflow_id: Any):
        self.node_id = node_id
        self.workflow_id = workflow_id
        super().__init__(f"Node {node_id} not found in workflow {workflow_id}")


class UnknownCondition(WorkflowError):
    """An edge is guarded by a condition name with no predicate."""

    def __init__(self, condition: str):
        self.condition = condition
        super().__init__(f"Unknown edge condition: {condition}")


class StageHandlerError(WorkflowError):
    """Unexpected exception raised inside a stage handler."""

    def __init__(self, node_id: str, original: BaseException):
        self.node_id = node_id
        self.original = original
        super().__init__(f"Stage {node_id} failed: {type(original).__name__}: {original}")


class RunNotFound(WorkflowError, LookupError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")


class ReviewNotPending(WorkflowError):
    """A human decision arrived for a run that is not waiting at a human gate."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} is not waiting for human review")


class InvalidHumanDecision(WorkflowError, ValueError):
    def __init__(self, decision: str, allowed: set[str]):
        self.decision = decision
        super().__init__(
            f"Invalid human decision '{decision}'. Allowed: {', '.join(sorted(allowed))}"
        )
