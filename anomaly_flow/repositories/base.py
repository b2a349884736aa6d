"""
Store interfaces consumed by the workflow engine.
The engine updates anomalies and workflows but never creates or deletes
anomalies.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from anomaly_flow.definitions import WorkflowDefinition
from anomaly_flow.schemas import AnomalyRecord, Judgment


class AnomalyStore(ABC):
    """Anomaly records with partial updates."""

    @abstractmethod
    async def get(self, anomaly_id: UUID) -> AnomalyRecord:
        """Return the anomaly or raise RecordNotFound."""

    @abstractmethod
    async def update(self, anomaly_id: UUID, patch: dict[str, Any]) -> AnomalyRecord:
        """Apply a partial update and return the post-update record."""

    @abstractmethod
    async def list_signal_judgments(self, anomaly_id: UUID) -> List[Judgment]:
        """Judgments collected from independent sources for this anomaly."""


class WorkflowStore(ABC):
    """Workflow definitions and their execution statistics."""

    @abstractmethod
    async def get(self, workflow_id: UUID) -> WorkflowDefinition:
        """Return the workflow or raise RecordNotFound."""

    @abstractmethod
    async def list_active(self) -> List[WorkflowDefinition]:
        """All workflows with status active."""

    @abstractmethod
    async def create(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        """Persist a new workflow definition."""

    @abstractmethod
    async def update(self, workflow_id: UUID, patch: dict[str, Any]) -> WorkflowDefinition:
        """Apply a partial update and return the post-update workflow."""

    @abstractmethod
    async def record_execution(
        self, workflow_id: UUID, duration_ms: float, executed_at: datetime
    ) -> WorkflowDefinition:
        """
        Count one finished run and fold its duration into the rolling average.

        Must be atomic per workflow so concurrent deliveries are not lost.
        """


def rolling_average(previous: Optional[float], count: int, duration_ms: float) -> float:
    """Mean of count previous durations plus one new duration."""
    if previous is None or count <= 0:
        return float(duration_ms)
    return (previous * count + duration_ms) / (count + 1)
