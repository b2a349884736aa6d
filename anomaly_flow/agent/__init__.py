"""
Workflow execution engine.
"""

from anomaly_flow.agent.errors import (
    InvalidHumanDecision,
    ReviewNotPending,
    RunNotFound,
    StageHandlerError,
    UnknownCondition,
    UnknownNode,
    WorkflowError,
)
from anomaly_flow.agent.graph import WorkflowEngine, evaluate_condition
from anomaly_flow.agent.state import ExecutionContext, RunSummary
from anomaly_flow.agent.timers import HumanReviewScheduler

__all__ = [
    "WorkflowEngine",
    "evaluate_condition",
    "ExecutionContext",
    "RunSummary",
    "HumanReviewScheduler",
    "WorkflowError",
    "UnknownNode",
    "UnknownCondition",
    "StageHandlerError",
    "RunNotFound",
    "ReviewNotPending",
    "InvalidHumanDecision",
]
