"""
SQLAlchemy ORM models for all database tables.
Includes: Anomaly, SignalData, Workflow, WorkflowRun, AuditEvent
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from anomaly_flow.db.base import Base
from anomaly_flow.definitions import WorkflowStatus
from anomaly_flow.schemas import (
    Actor,
    AnomalyStatus,
    AuditAction,
    RunStatus,
    Severity,
    utcnow,
)


class Workflow(Base):
    """Stored workflow definition with execution statistics."""

    __tablename__ = "workflows"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[WorkflowStatus] = mapped_column(
        Enum(WorkflowStatus, native_enum=False, length=20),
        nullable=False,
        default=WorkflowStatus.ACTIVE,
    )
    entry_node: Mapped[str] = mapped_column(String(100), nullable=False)
    nodes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    edges: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    variables: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Execution statistics
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_executed: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    average_execution_time_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Workflow(id={self.id}, name={self.name}, version={self.version})>"


class Anomaly(Base):
    """Detected anomaly moving through a workflow."""

    __tablename__ = "anomalies"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    severity: Mapped[Severity] = mapped_column(
        Enum(Severity, native_enum=False, length=20),
        nullable=False,
        default=Severity.MEDIUM,
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[AnomalyStatus] = mapped_column(
        Enum(AnomalyStatus, native_enum=False, length=20),
        nullable=False,
        default=AnomalyStatus.DETECTED,
    )
    location: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # {lat, lng, address}
    modalities: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # {text, images}
    source_apis: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    ai_analysis: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    cross_verification: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    workflow_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("workflows.id", ondelete="SET NULL"), nullable=True
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # Relationships
    signals: Mapped[list["SignalData"]] = relationship(
        back_populates="anomaly", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Anomaly(id={self.id}, title={self.title}, status={self.status})>"


class SignalData(Base):
    """Per-source judgment collected for an anomaly."""

    __tablename__ = "signal_data"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    anomaly_id: Mapped[UUID] = mapped_column(
        ForeignKey("anomalies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_api: Mapped[str] = mapped_column(String(100), nullable=False)
    judgment: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    collected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # Relationships
    anomaly: Mapped["Anomaly"] = relationship(back_populates="signals")

    def __repr__(self) -> str:
        return f"<SignalData(id={self.id}, anomaly_id={self.anomaly_id}, source={self.source_api})>"


class WorkflowRun(Base):
    """Checkpoint of a workflow run, overwritten after every stage."""

    __tablename__ = "workflow_runs"

    run_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    workflow_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    anomaly_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, native_enum=False, length=20),
        nullable=False,
        default=RunStatus.RUNNING,
    )
    current_node: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    variables: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    node_states: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    awaiting_review: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<WorkflowRun(run_id={self.run_id}, status={self.status}, node={self.current_node})>"


class AuditEvent(Base):
    """Append-only audit log of every stage outcome."""

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    anomaly_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, native_enum=False, length=30), nullable=False
    )
    actor: Mapped[Actor] = mapped_column(
        Enum(Actor, native_enum=False, length=20), nullable=False, default=Actor.SYSTEM
    )
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    changes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    run_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    node_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<AuditEvent(id={self.id}, anomaly_id={self.anomaly_id}, action={self.action})>"
