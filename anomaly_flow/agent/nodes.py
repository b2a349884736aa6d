"""
Stage handlers for workflow execution.
Each handler performs one node type's work, updates the anomaly and the
run variables, and appends exactly one audit event.
"""

import base64
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Optional

from anomaly_flow.agent.state import ExecutionContext
from anomaly_flow.ai.errors import ProviderUnavailable
from anomaly_flow.audit.logger import EventSink
from anomaly_flow.config import settings
from anomaly_flow.definitions import NodeDefinition, NodeType
from anomaly_flow.integrations.remote_jobs import RemoteJobClient, RemoteJobError
from anomaly_flow.notifications import (
    NotificationBus,
    notify_anomaly_update,
    notify_high_severity_alert,
    notify_workflow_update,
)
from anomaly_flow.repositories.base import AnomalyStore, WorkflowStore
from anomaly_flow.schemas import (
    Actor,
    AnomalyStatus,
    AuditAction,
    AuditEventRecord,
    RunStatus,
    Severity,
    utcnow,
)
from anomaly_flow.tools.content_analyzer import ContentAnalyzer
from anomaly_flow.tools.cross_verifier import aggregate
from anomaly_flow.tools.report_generator import ReportGenerator
from anomaly_flow.tools.signal_analyzer import SignalAnalyzer

logger = logging.getLogger(__name__)


class StageOutcome(str, enum.Enum):
    """What the engine should do after a handler returns."""

    COMPLETED = "completed"
    SUSPENDED = "suspended"


@dataclass
class StageServices:
    """
    Collaborators shared by all stage handlers.
    """

    anomalies: AnomalyStore
    workflows: WorkflowStore
    sink: EventSink
    notifier: NotificationBus
    analyzer: SignalAnalyzer
    report_generator: Optional[ReportGenerator] = None
    content_analyzer: Optional[ContentAnalyzer] = None
    remote_jobs: Optional[RemoteJobClient] = None
    run_in_background: Optional[Callable[[Coroutine[Any, Any, Any]], None]] = None
    auto_approve_threshold: float = field(default_factory=lambda: settings.auto_approve_threshold)
    human_review_threshold: float = field(default_factory=lambda: settings.human_review_threshold)
    escalate_threshold: float = field(default_factory=lambda: settings.escalate_threshold)
    required_sources: int = field(default_factory=lambda: settings.required_sources)

    async def audit(
        self,
        run: ExecutionContext,
        node: Optional[NodeDefinition],
        action: AuditAction,
        reasoning: str,
        actor: Actor = Actor.SYSTEM,
        confidence: Optional[float] = None,
        changes: Optional[dict[str, Any]] = None,
    ) -> None:
        await self.sink.append(
            AuditEventRecord(
                anomaly_id=run.anomaly_id,
                action=action,
                actor=actor,
                reasoning=reasoning,
                confidence=confidence,
                changes=changes or {},
                run_id=run.run_id,
                node_id=node.id if node else None,
            )
        )


StageHandler = Callable[[ExecutionContext, NodeDefinition, StageServices], Awaitable[StageOutcome]]


def _config(node: NodeDefinition, key: str, default: Any) -> Any:
    value = node.config.get(key)
    return default if value is None else value


async def intake_stage(
    run: ExecutionContext, node: NodeDefinition, services: StageServices
) -> StageOutcome:
    """
    Intake: check the anomaly carries the data later stages rely on.

    Writes variables.dataCompleteness as the fraction of checks passed.
    """
    anomaly = await services.anomalies.get(run.anomaly_id)

    validation = {
        "hasBasicInfo": bool(anomaly.title and anomaly.description),
        "hasLocation": bool(anomaly.location),
        "hasModalities": bool(anomaly.modalities),
        "hasSourceApis": bool(anomaly.source_apis),
    }
    completeness = sum(validation.values()) / len(validation)

    run.variables["intakeValidation"] = validation
    run.variables["dataCompleteness"] = completeness

    await services.audit(
        run,
        node,
        AuditAction.VALIDATED,
        f"Intake validation completed, data completeness {completeness:.0%}",
        changes={"intakeValidation": validation},
    )

    logger.info(f"Intake validation completed for anomaly {run.anomaly_id}: {validation}")
    return StageOutcome.COMPLETED


async def ai_analysis_stage(
    run: ExecutionContext, node: NodeDefinition, services: StageServices
) -> StageOutcome:
    """
    AI analysis: judge the anomaly's observation through the signal analyzer.
    """
    anomaly = await services.anomalies.get(run.anomaly_id)
    judgment = await services.analyzer.analyze(anomaly.to_observation())
    analysis = judgment.model_dump(mode="json")

    await services.anomalies.update(
        run.anomaly_id,
        {
            "ai_analysis": analysis,
            "confidence": judgment.confidence,
            "severity": judgment.severity,
        },
    )

    run.variables["aiAnalysis"] = analysis
    run.variables["confidence"] = judgment.confidence

    await services.audit(
        run,
        node,
        AuditAction.PROCESSED,
        "AI analysis completed via workflow",
        actor=Actor.AI,
        confidence=judgment.confidence,
        changes={"aiAnalysis": True, "provider": judgment.provider},
    )
    notify_anomaly_update(services.notifier, run.anomaly_id, {"aiAnalysis": analysis})

    logger.info(
        f"AI analysis completed for anomaly {run.anomaly_id} "
        f"with confidence {judgment.confidence} via {judgment.provider}"
    )
    return StageOutcome.COMPLETED


async def verification_stage(
    run: ExecutionContext, node: NodeDefinition, services: StageServices
) -> StageOutcome:
    """
    Cross-verification: aggregate the judgments of independent sources.

    Images attached to the anomaly are judged by the content analyzer and
    count as sources alongside the collected signal judgments. Too few
    sources is a valid outcome, recorded as insufficient data with
    confidence 0.5.
    """
    required = _config(node, "required_sources", services.required_sources)
    judgments = list(await services.anomalies.list_signal_judgments(run.anomaly_id))

    if services.content_analyzer is not None:
        anomaly = await services.anomalies.get(run.anomaly_id)
        for index, image in enumerate(anomaly.to_observation().images):
            judgments.append(
                await services.content_analyzer.analyze_image(
                    base64.b64decode(image.data),
                    filename=f"{run.anomaly_id}-image-{index}",
                    mime_type=image.mime_type,
                )
            )

    if len(judgments) >= required:
        result = aggregate(judgments)
        verification = result.model_dump(mode="json")

        run.variables["crossVerification"] = verification
        run.variables["verificationConfidence"] = result.confidence
        run.variables["verificationStatus"] = "verified"

        await services.anomalies.update(run.anomaly_id, {"cross_verification": verification})
        await services.audit(
            run,
            node,
            AuditAction.VERIFIED,
            result.reasoning,
            confidence=result.confidence,
            changes={"crossVerification": True, "sourceCount": result.source_count},
        )
        notify_anomaly_update(
            services.notifier, run.anomaly_id, {"crossVerification": verification}
        )
    else:
        run.variables["crossVerification"] = {
            "status": "insufficient_data",
            "sourceCount": len(judgments),
        }
        run.variables["verificationConfidence"] = 0.5
        run.variables["verificationStatus"] = "insufficient_data"

        await services.audit(
            run,
            node,
            AuditAction.VERIFIED,
            f"Insufficient data: {len(judgments)} of {required} required sources available",
            confidence=0.5,
            changes={"crossVerification": "insufficient_data", "sourceCount": len(judgments)},
        )

    logger.info(
        f"Cross-verification completed for anomaly {run.anomaly_id}: "
        f"{run.variables['verificationStatus']} ({len(judgments)} sources)"
    )
    return StageOutcome.COMPLETED


def decide(confidence: float, auto_approve_threshold: float, escalate_threshold: float) -> str:
    """
    Choose the branch for a confidence score.

    Auto-approve is checked before escalate. Everything else, including
    the band between the review and auto-approve thresholds, goes to
    human review.
    """
    if confidence >= auto_approve_threshold:
        return "auto_approve"
    if confidence >= escalate_threshold:
        return "escalate"
    return "needs_review"


async def decision_stage(
    run: ExecutionContext, node: NodeDefinition, services: StageServices
) -> StageOutcome:
    """
    Decision: branch on variables.confidence against the node's thresholds.
    """
    confidence = run.variables.get("confidence") or 0.0

    review_threshold = _config(node, "human_review_threshold", services.human_review_threshold)
    decision = decide(
        confidence,
        _config(node, "auto_approve_threshold", services.auto_approve_threshold),
        _config(node, "escalate_threshold", services.escalate_threshold),
    )
    if decision == "escalate" and not run.variables.get("escalationEnabled", True):
        decision = "needs_review"

    reason = f"Confidence {confidence} led to {decision}"
    run.variables["decision"] = decision
    run.variables["decisionReason"] = reason

    await services.audit(
        run,
        node,
        AuditAction.DECIDED,
        reason,
        confidence=confidence,
        changes={"decision": decision, "belowReviewThreshold": confidence < review_threshold},
    )

    logger.info(f"Decision made for anomaly {run.anomaly_id}: {decision} (confidence: {confidence})")
    return StageOutcome.COMPLETED


async def human_gate_stage(
    run: ExecutionContext, node: NodeDefinition, services: StageServices
) -> StageOutcome:
    """
    Human gate: mark the anomaly as awaiting review and suspend the run.

    The engine resumes the run on a human decision or on timeout.
    """
    await services.anomalies.update(run.anomaly_id, {"status": AnomalyStatus.AWAITING_REVIEW})

    await services.audit(
        run,
        node,
        AuditAction.REVIEW_REQUESTED,
        f"Human review requested (confidence {run.variables.get('confidence')})",
        confidence=run.variables.get("confidence"),
        changes={"status": AnomalyStatus.AWAITING_REVIEW.value},
    )
    notify_anomaly_update(
        services.notifier, run.anomaly_id, {"status": AnomalyStatus.AWAITING_REVIEW.value}
    )

    logger.info(f"Human review initiated for anomaly {run.anomaly_id}")
    return StageOutcome.SUSPENDED


async def escalation_stage(
    run: ExecutionContext, node: NodeDefinition, services: StageServices
) -> StageOutcome:
    """
    Escalation: raise the anomaly to critical and alert.
    """
    anomaly = await services.anomalies.update(
        run.anomaly_id,
        {"severity": Severity.CRITICAL, "status": AnomalyStatus.ESCALATED},
    )
    changes = {"severity": Severity.CRITICAL.value, "status": AnomalyStatus.ESCALATED.value}

    await services.audit(
        run,
        node,
        AuditAction.ESCALATED,
        "Workflow escalation due to high severity",
        changes=changes,
    )
    notify_anomaly_update(services.notifier, run.anomaly_id, changes)
    notify_high_severity_alert(services.notifier, anomaly.model_dump(mode="json"))

    logger.info(f"Anomaly {run.anomaly_id} escalated to critical priority")
    return StageOutcome.COMPLETED


async def approval_stage(
    run: ExecutionContext, node: NodeDefinition, services: StageServices
) -> StageOutcome:
    """
    Approval: mark the anomaly approved and optionally draft a report.

    A report that cannot be generated is recorded as reportGenerated=false;
    it does not fail the run.
    """
    anomaly = await services.anomalies.update(run.anomaly_id, {"status": AnomalyStatus.APPROVED})
    changes: dict[str, Any] = {"status": AnomalyStatus.APPROVED.value}

    if _config(node, "generate_report", False) and services.report_generator is not None:
        try:
            report = await services.report_generator.generate(anomaly.model_dump(mode="json"))
        except ProviderUnavailable as e:
            logger.warning(f"Report generation skipped for anomaly {run.anomaly_id}: {e}")
            run.variables["reportGenerated"] = False
        else:
            run.variables["report"] = report.content
            run.variables["reportGenerated"] = True
        changes["reportGenerated"] = run.variables["reportGenerated"]

    await services.audit(
        run,
        node,
        AuditAction.APPROVED,
        "Workflow approval completed",
        changes=changes,
    )
    notify_anomaly_update(services.notifier, run.anomaly_id, {"status": AnomalyStatus.APPROVED.value})

    logger.info(f"Anomaly {run.anomaly_id} approved and finalized")
    return StageOutcome.COMPLETED


async def _trigger_remote_job(client: RemoteJobClient, anomaly_data: dict[str, Any]) -> None:
    try:
        job_id = await client.submit(anomaly_data)
    except RemoteJobError as e:
        logger.error(f"Remote job trigger failed for anomaly {anomaly_data.get('id')}: {e}")
        return
    logger.info(f"Remote job {job_id} started for anomaly {anomaly_data.get('id')}")


async def delivery_stage(
    run: ExecutionContext, node: NodeDefinition, services: StageServices
) -> StageOutcome:
    """
    Delivery: mark the anomaly processed, record workflow statistics and
    complete the run.
    """
    anomaly = await services.anomalies.update(run.anomaly_id, {"status": AnomalyStatus.PROCESSED})

    duration_ms = run.duration_ms()
    await services.workflows.record_execution(run.workflow_id, duration_ms, executed_at=utcnow())

    await services.audit(
        run,
        node,
        AuditAction.WORKFLOW_COMPLETED,
        f"Workflow completed in {duration_ms:.0f} ms",
        changes={"status": AnomalyStatus.PROCESSED.value},
    )
    notify_anomaly_update(services.notifier, run.anomaly_id, {"status": AnomalyStatus.PROCESSED.value})

    if (
        _config(node, "trigger_remote_job", False)
        and services.remote_jobs is not None
        and services.remote_jobs.enabled
        and services.run_in_background is not None
    ):
        services.run_in_background(
            _trigger_remote_job(services.remote_jobs, anomaly.model_dump(mode="json"))
        )

    run.finish(RunStatus.COMPLETED)
    notify_workflow_update(
        services.notifier,
        run.workflow_id,
        {"status": RunStatus.COMPLETED.value, "runId": run.run_id},
    )

    logger.info(f"Workflow run {run.run_id} completed for anomaly {run.anomaly_id}")
    return StageOutcome.COMPLETED


STAGE_HANDLERS: dict[NodeType, StageHandler] = {
    NodeType.INTAKE: intake_stage,
    NodeType.AI_ANALYSIS: ai_analysis_stage,
    NodeType.VERIFICATION: verification_stage,
    NodeType.DECISION: decision_stage,
    NodeType.HUMAN_GATE: human_gate_stage,
    NodeType.ESCALATION: escalation_stage,
    NodeType.APPROVAL: approval_stage,
    NodeType.DELIVERY: delivery_stage,
}

_unhandled = set(NodeType) - set(STAGE_HANDLERS)
if _unhandled:
    raise RuntimeError(f"No stage handler for node types: {sorted(t.value for t in _unhandled)}")
