"""
Append-only audit sink for anomaly workflow events.
Every stage outcome is recorded; run checkpoints are stored alongside so a
run can be resumed after a restart.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from anomaly_flow.db.models import AuditEvent, WorkflowRun
from anomaly_flow.schemas import AuditEventRecord, RunCheckpoint, RunStatus

logger = logging.getLogger(__name__)

REDACTED_KEYS = {"password", "api_key", "token", "secret", "service_key"}
MAX_STRING_LENGTH = 1000
MAX_LIST_ITEMS = 100


def sanitize_changes(data: Any) -> Any:
    """
    Make a change set safe to persist.

    - Redacts sensitive keys
    - Truncates very large strings
    - Caps list length
    - Stringifies values JSON cannot hold

    Args:
        data: Change set (usually a dict)

    Returns:
        JSON-compatible copy of the data
    """
    if data is None:
        return None

    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if str(key).lower() in REDACTED_KEYS:
                sanitized[key] = "***REDACTED***"
            else:
                sanitized[key] = sanitize_changes(value)
        return sanitized

    if isinstance(data, (list, tuple)):
        return [sanitize_changes(item) for item in data[:MAX_LIST_ITEMS]]

    if isinstance(data, str):
        if len(data) > MAX_STRING_LENGTH:
            return data[:MAX_STRING_LENGTH] + "... (truncated)"
        return data

    if isinstance(data, (int, float, bool)):
        return data

    return str(data)


class EventSink(ABC):
    """
    Append-only event recorder.

    Events are never updated or deleted. Checkpoints are the one mutable
    record and are keyed by run id.
    """

    @abstractmethod
    async def append(self, event: AuditEventRecord) -> None:
        """Record one event."""

    @abstractmethod
    async def list_by_anomaly(self, anomaly_id: UUID) -> List[AuditEventRecord]:
        """All events for an anomaly, oldest first."""

    @abstractmethod
    async def checkpoint(self, state: RunCheckpoint) -> None:
        """Store the latest snapshot of a run."""

    @abstractmethod
    async def load_checkpoint(self, run_id: str) -> Optional[RunCheckpoint]:
        """Latest snapshot of a run, or None."""

    @abstractmethod
    async def list_running_checkpoints(self) -> List[RunCheckpoint]:
        """Snapshots of runs that had not finished when last saved."""


class AuditLogger(EventSink):
    """
    SQL-backed event sink.

    Events go to the audit_events table with:
    - Anomaly ID
    - Action and actor
    - Reasoning and confidence
    - Changes (sanitized)
    - Run and node IDs
    - Timestamp
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        """
        Initialize the audit logger.

        Args:
            session_maker: Factory for database sessions
        """
        self.session_maker = session_maker

    async def append(self, event: AuditEventRecord) -> None:
        async with self.session_maker() as session:
            session.add(
                AuditEvent(
                    anomaly_id=event.anomaly_id,
                    action=event.action,
                    actor=event.actor,
                    reasoning=event.reasoning,
                    confidence=event.confidence,
                    changes=sanitize_changes(event.changes) or {},
                    run_id=event.run_id,
                    node_id=event.node_id,
                    timestamp=event.timestamp,
                )
            )
            await session.commit()

        logger.debug(f"Audit event {event.action.value} recorded for anomaly {event.anomaly_id}")

    async def list_by_anomaly(self, anomaly_id: UUID) -> List[AuditEventRecord]:
        """
        Retrieve the audit trail of an anomaly.

        Returns:
            Events ordered by timestamp, ties broken by insertion order
        """
        async with self.session_maker() as session:
            result = await session.execute(
                select(AuditEvent)
                .where(AuditEvent.anomaly_id == anomaly_id)
                .order_by(AuditEvent.timestamp, AuditEvent.id)
            )
            return [AuditEventRecord.model_validate(row) for row in result.scalars().all()]

    async def checkpoint(self, state: RunCheckpoint) -> None:
        data = state.model_dump(mode="json")

        async with self.session_maker() as session:
            row = await session.get(WorkflowRun, state.run_id)
            if row is None:
                row = WorkflowRun(
                    run_id=state.run_id,
                    workflow_id=state.workflow_id,
                    anomaly_id=state.anomaly_id,
                    started_at=state.started_at,
                )
                session.add(row)

            row.status = state.status
            row.current_node = state.current_node
            row.variables = data["variables"]
            row.node_states = data["node_states"]
            row.awaiting_review = state.awaiting_review
            row.error = state.error
            row.completed_at = state.completed_at
            await session.commit()

    async def load_checkpoint(self, run_id: str) -> Optional[RunCheckpoint]:
        async with self.session_maker() as session:
            row = await session.get(WorkflowRun, run_id)
            if row is None:
                return None
            return RunCheckpoint.model_validate(row)

    async def list_running_checkpoints(self) -> List[RunCheckpoint]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(WorkflowRun)
                .where(WorkflowRun.status == RunStatus.RUNNING)
                .order_by(WorkflowRun.started_at)
            )
            return [RunCheckpoint.model_validate(row) for row in result.scalars().all()]
