"""
Workflow definition models.
A workflow is an immutable (per version) graph of typed stages joined by
optionally conditional edges.
"""

import enum
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class NodeType(str, enum.Enum):
    """The closed set of stage types the engine can execute."""

    INTAKE = "intake"
    AI_ANALYSIS = "ai-analysis"
    VERIFICATION = "verification"
    DECISION = "decision"
    HUMAN_GATE = "human-gate"
    ESCALATION = "escalation"
    APPROVAL = "approval"
    DELIVERY = "delivery"


class EdgeCondition(str, enum.Enum):
    """Named predicates an edge may be guarded by."""

    NEEDS_REVIEW = "needs_review"
    ESCALATE = "escalate"
    AUTO_APPROVE = "auto_approve"
    APPROVED = "approved"


class WorkflowStatus(str, enum.Enum):
    """Whether a workflow definition can be used for new runs."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class NodeDefinition(BaseModel):
    """A typed unit of work in the workflow graph."""

    id: str
    type: NodeType
    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)


class EdgeDefinition(BaseModel):
    """
    Connection between two nodes.

    The condition is kept as the raw configured name so that unknown
    names can be reported by validation instead of failing to load.
    """

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    condition: Optional[str] = None


class WorkflowDefinition(BaseModel):
    """Workflow graph plus its execution statistics."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    name: str
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    entry_node: str
    nodes: List[NodeDefinition]
    edges: List[EdgeDefinition] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    version: int = 1
    tags: List[str] = Field(default_factory=list)
    execution_count: int = 0
    last_executed: Optional[datetime] = None
    average_execution_time_ms: Optional[float] = None

    def get_node(self, node_id: str) -> Optional[NodeDefinition]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[EdgeDefinition]:
        """Outgoing edges of a node, in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]


def default_workflow(
    auto_approve_threshold: float = 0.8,
    human_review_threshold: float = 0.6,
    escalate_threshold: float = 0.9,
    required_sources: int = 2,
    human_review_timeout_seconds: float = 3600.0,
    autonomous_mode: bool = False,
) -> WorkflowDefinition:
    """
    Build the standard intake-decide-review-deliver workflow.

    Returns:
        WorkflowDefinition with a fresh id
    """
    return WorkflowDefinition(
        name="Default Anomaly Processing Workflow",
        description="Standard intake-decide-review-deliver workflow",
        entry_node="intake",
        nodes=[
            NodeDefinition(
                id="intake",
                type=NodeType.INTAKE,
                label="Data Intake & Initial Processing",
            ),
            NodeDefinition(
                id="ai_analysis",
                type=NodeType.AI_ANALYSIS,
                label="AI Analysis & Anomaly Detection",
            ),
            NodeDefinition(
                id="cross_verification",
                type=NodeType.VERIFICATION,
                label="Cross-Modal Verification",
                config={"required_sources": required_sources},
            ),
            NodeDefinition(
                id="decision",
                type=NodeType.DECISION,
                label="Decision Point",
                config={
                    "auto_approve_threshold": auto_approve_threshold,
                    "human_review_threshold": human_review_threshold,
                    "escalate_threshold": escalate_threshold,
                },
            ),
            NodeDefinition(
                id="human_review",
                type=NodeType.HUMAN_GATE,
                label="Human Review",
                config={"timeout_seconds": human_review_timeout_seconds},
            ),
            NodeDefinition(
                id="escalation",
                type=NodeType.ESCALATION,
                label="Escalation to Higher Authority",
            ),
            NodeDefinition(
                id="approval",
                type=NodeType.APPROVAL,
                label="Final Approval",
                config={"generate_report": True},
            ),
            NodeDefinition(
                id="delivery",
                type=NodeType.DELIVERY,
                label="Deliver Results & Notifications",
            ),
        ],
        edges=[
            EdgeDefinition(source="intake", target="ai_analysis"),
            EdgeDefinition(source="ai_analysis", target="cross_verification"),
            EdgeDefinition(source="cross_verification", target="decision"),
            EdgeDefinition(source="decision", target="human_review", condition="needs_review"),
            EdgeDefinition(source="decision", target="escalation", condition="escalate"),
            EdgeDefinition(source="decision", target="approval", condition="auto_approve"),
            EdgeDefinition(source="human_review", target="approval", condition="approved"),
            EdgeDefinition(source="human_review", target="escalation", condition="escalate"),
            EdgeDefinition(source="escalation", target="approval"),
            EdgeDefinition(source="approval", target="delivery"),
        ],
        variables={
            "autonomousMode": autonomous_mode,
            "confidenceThreshold": 0.7,
            "escalationEnabled": True,
        },
        tags=["default", "standard"],
    )
