"""
Execution state of a workflow run.
One context per run, owned by the engine; stages of a run execute
sequentially so the context is never mutated concurrently.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel

from anomaly_flow.definitions import WorkflowDefinition
from anomaly_flow.schemas import NodeState, NodeStatus, RunCheckpoint, RunStatus, utcnow


def _aware(value: datetime) -> datetime:
    """Stores without timezone support hand back naive UTC datetimes."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class RunSummary(BaseModel):
    """Externally visible status of a run."""

    run_id: str
    workflow_id: UUID
    anomaly_id: UUID
    status: RunStatus
    current_node: Optional[str] = None
    awaiting_review: bool = False
    progress: float = 0.0
    error: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


@dataclass
class ExecutionContext:
    """Mutable state of one run."""

    run_id: str
    workflow_id: UUID
    anomaly_id: UUID
    workflow: Optional[WorkflowDefinition] = None
    variables: dict[str, Any] = field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING
    current_node: Optional[str] = None
    node_states: dict[str, NodeState] = field(default_factory=dict)
    awaiting_review: Optional[str] = None  # id of the human gate being waited on
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.status == RunStatus.RUNNING

    def progress(self) -> float:
        """Fraction of workflow nodes that reached a final state."""
        if self.workflow is None or not self.workflow.nodes:
            return 0.0
        finished = sum(1 for state in self.node_states.values() if state.status != NodeStatus.PENDING)
        return finished / len(self.workflow.nodes)

    def mark_node(self, node_id: str, status: NodeStatus, error: Optional[str] = None) -> None:
        state = self.node_states.setdefault(node_id, NodeState())
        state.status = status
        state.error = error
        if status != NodeStatus.PENDING:
            state.finished_at = utcnow()

    def finish(self, status: RunStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.error = error
        self.completed_at = utcnow()

    def duration_ms(self) -> float:
        end = self.completed_at or utcnow()
        return (end - self.started_at).total_seconds() * 1000

    def summary(self) -> RunSummary:
        return RunSummary(
            run_id=self.run_id,
            workflow_id=self.workflow_id,
            anomaly_id=self.anomaly_id,
            status=self.status,
            current_node=self.current_node,
            awaiting_review=self.awaiting_review is not None,
            progress=self.progress(),
            error=self.error,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    def to_checkpoint(self) -> RunCheckpoint:
        return RunCheckpoint(
            run_id=self.run_id,
            workflow_id=self.workflow_id,
            anomaly_id=self.anomaly_id,
            status=self.status,
            current_node=self.current_node,
            variables=dict(self.variables),
            node_states={key: state.model_copy() for key, state in self.node_states.items()},
            awaiting_review=self.awaiting_review,
            error=self.error,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )

    @classmethod
    def from_checkpoint(
        cls, checkpoint: RunCheckpoint, workflow: WorkflowDefinition
    ) -> "ExecutionContext":
        return cls(
            run_id=checkpoint.run_id,
            workflow_id=checkpoint.workflow_id,
            anomaly_id=checkpoint.anomaly_id,
            workflow=workflow,
            variables=dict(checkpoint.variables),
            status=checkpoint.status,
            current_node=checkpoint.current_node,
            node_states={key: state.model_copy() for key, state in checkpoint.node_states.items()},
            awaiting_review=checkpoint.awaiting_review,
            error=checkpoint.error,
            started_at=_aware(checkpoint.started_at),
            completed_at=_aware(checkpoint.completed_at) if checkpoint.completed_at else None,
        )
