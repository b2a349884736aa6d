"""
Value objects and records shared by the gateway, analyzers, stores
and workflow engine.
"""

import enum
from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnomalyStatus(str, enum.Enum):
    """Anomaly lifecycle status."""

    DETECTED = "detected"
    PROCESSING = "processing"
    AWAITING_REVIEW = "awaiting_review"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    PROCESSED = "processed"
    FAILED = "failed"


class RunStatus(str, enum.Enum):
    """Workflow run status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NodeStatus(str, enum.Enum):
    """Per-node status within a run."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Actor(str, enum.Enum):
    """Who performed an audited action."""

    SYSTEM = "system"
    HUMAN = "human"
    AI = "ai"


class AuditAction(str, enum.Enum):
    """Audited actions, one per stage outcome."""

    VALIDATED = "validated"
    PROCESSED = "processed"
    VERIFIED = "verified"
    DECIDED = "decided"
    REVIEW_REQUESTED = "review_requested"
    REVIEWED = "reviewed"
    ESCALATED = "escalated"
    APPROVED = "approved"
    WORKFLOW_COMPLETED = "workflow_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Severity(str, enum.Enum):
    """Anomaly severity levels, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def coerce(cls, value: object) -> "Severity":
        """Parse a severity label case-insensitively ("High" -> HIGH)."""
        if isinstance(value, Severity):
            return value
        return cls(str(value).strip().lower())


def severity_for_confidence(confidence: float, is_anomaly: bool) -> Severity:
    """
    Map a confidence score to a severity level.

    Non-anomalies are always LOW.
    """
    if not is_anomaly:
        return Severity.LOW
    if confidence > 0.8:
        return Severity.CRITICAL
    if confidence > 0.6:
        return Severity.HIGH
    if confidence > 0.4:
        return Severity.MEDIUM
    return Severity.LOW


class Judgment(BaseModel):
    """Structured output of any anomaly-assessment call."""

    is_anomaly: bool
    severity: Severity = Severity.MEDIUM
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    provider: str = "unknown"
    recommended_actions: List[str] = Field(default_factory=list)
    is_fake: bool = False


class Location(BaseModel):
    """Geographic position of an observation."""

    lat: float
    lng: float
    address: Optional[str] = None


class ImageAttachment(BaseModel):
    """Base64-encoded image sent alongside a prompt."""

    data: str = Field(description="Base64 encoded image bytes")
    mime_type: str = "image/jpeg"


class Observation(BaseModel):
    """Raw observation handed to the signal analyzer."""

    text: Optional[str] = None
    images: List[ImageAttachment] = Field(default_factory=list)
    location: Optional[Location] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source_labels: List[str] = Field(default_factory=list)
    existing_context: Optional[dict] = None


class CrossVerificationResult(BaseModel):
    """Consensus judgment across several independent signal analyses."""

    consensus: float = Field(ge=0.0, le=1.0)
    is_anomaly: bool
    confidence: float = Field(ge=0.0, le=1.0)
    severity: Severity
    reasoning: str
    source_count: int = 0
    is_fake: bool = False


class AnomalyRecord(BaseModel):
    """Snapshot of a stored anomaly."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: Optional[str] = None
    severity: Severity = Severity.MEDIUM
    confidence: float = 0.0
    status: AnomalyStatus = AnomalyStatus.DETECTED
    location: Optional[dict] = None
    modalities: Optional[dict] = None
    source_apis: Optional[List[str]] = None
    ai_analysis: Optional[dict] = None
    cross_verification: Optional[dict] = None
    workflow_id: Optional[UUID] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_observation(self) -> Observation:
        """Project the record onto the analyzer's observation shape."""
        modalities = self.modalities or {}
        return Observation(
            text=modalities.get("text") or self.description,
            images=modalities.get("images") or [],
            location=self.location,
            timestamp=self.timestamp,
            source_labels=list(self.source_apis or []),
            existing_context=self.ai_analysis,
        )


class AuditEventRecord(BaseModel):
    """Append-only audit trail entry."""

    model_config = ConfigDict(from_attributes=True)

    anomaly_id: UUID
    action: AuditAction
    actor: Actor = Actor.SYSTEM
    reasoning: str = ""
    confidence: Optional[float] = None
    changes: dict[str, Any] = Field(default_factory=dict)
    run_id: Optional[str] = None
    node_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class NodeState(BaseModel):
    """Status of one node within a run."""

    status: NodeStatus = NodeStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None


class RunCheckpoint(BaseModel):
    """Serializable snapshot of a run, written after every stage."""

    model_config = ConfigDict(from_attributes=True)

    run_id: str
    workflow_id: UUID
    anomaly_id: UUID
    status: RunStatus
    current_node: Optional[str] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    node_states: dict[str, NodeState] = Field(default_factory=dict)
    awaiting_review: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
