"""
Tests for the workflow execution engine.
"""

import asyncio
import base64
from uuid import uuid4

import pytest

from anomaly_flow.agent.errors import (
    InvalidHumanDecision,
    ReviewNotPending,
    RunNotFound,
    UnknownCondition,
    WorkflowError,
)
from anomaly_flow.agent.graph import WorkflowEngine, evaluate_condition
from anomaly_flow.ai.gateway import AIGateway
from anomaly_flow.definitions import (
    EdgeDefinition,
    NodeDefinition,
    NodeType,
    WorkflowDefinition,
    default_workflow,
)
from anomaly_flow.notifications import ALERTS_CHANNEL, WORKFLOWS_CHANNEL
from anomaly_flow.schemas import (
    Actor,
    AnomalyStatus,
    AuditAction,
    Judgment,
    NodeStatus,
    RunStatus,
    Severity,
)
from anomaly_flow.tools.report_generator import ReportGenerator
from tests.conftest import (
    FakeAnomalyStore,
    FakeEventSink,
    StubAnalyzer,
    linear_workflow,
    make_anomaly,
    make_signals,
    wait_until,
)


def actions(events):
    return [event.action for event in events]


def test_evaluate_condition_named_predicates():
    """Each named condition reads decision or humanDecision."""
    assert evaluate_condition(None, {}) is True
    assert evaluate_condition("auto_approve", {"decision": "auto_approve"}) is True
    assert evaluate_condition("auto_approve", {"decision": "needs_review"}) is False
    assert evaluate_condition("needs_review", {"decision": "needs_review"}) is True
    assert evaluate_condition("approved", {"humanDecision": "approved"}) is True
    assert evaluate_condition("approved", {"decision": "auto_approve"}) is False


def test_evaluate_condition_escalate_reads_both_decisions():
    """escalate fires for an escalate decision from either the rules or a reviewer."""
    assert evaluate_condition("escalate", {"decision": "escalate"}) is True
    assert evaluate_condition("escalate", {"decision": "needs_review", "humanDecision": "escalate"}) is True
    assert evaluate_condition("escalate", {"decision": "needs_review"}) is False


def test_evaluate_condition_unknown_name_raises():
    """Unknown condition names are errors, not pass-through."""
    with pytest.raises(UnknownCondition) as exc_info:
        evaluate_condition("maybe_later", {})
    assert exc_info.value.condition == "maybe_later"


@pytest.mark.asyncio
async def test_happy_path_completes_with_one_event_per_node(
    workflow_engine, anomaly_store, workflow_store, event_sink
):
    """A high-confidence anomaly runs straight through to delivery."""
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow())

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.COMPLETED
    assert summary.progress == 1.0
    assert summary.completed_at is not None
    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.PROCESSED

    events = await event_sink.list_by_anomaly(anomaly.id)
    assert actions(events) == [
        AuditAction.VALIDATED,
        AuditAction.PROCESSED,
        AuditAction.DECIDED,
        AuditAction.WORKFLOW_COMPLETED,
    ]
    assert [event.node_id for event in events] == ["intake", "ai_analysis", "decision", "delivery"]
    assert all(event.run_id == run_id for event in events)
    assert events[1].actor == Actor.AI


@pytest.mark.asyncio
async def test_happy_path_writes_stage_outputs(
    workflow_engine, anomaly_store, workflow_store, event_sink
):
    """Stages leave their results on the anomaly and in the run variables."""
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow())

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)

    record = anomaly_store.records[anomaly.id]
    assert record.confidence == 0.85
    assert record.ai_analysis["provider"] == "stub"
    assert record.workflow_id == workflow.id

    variables = event_sink.checkpoints[run_id].variables
    assert variables["dataCompleteness"] == 1.0
    assert variables["confidence"] == 0.85
    assert variables["decision"] == "auto_approve"


@pytest.mark.asyncio
async def test_delivery_updates_workflow_statistics(workflow_engine, anomaly_store, workflow_store):
    """Each delivered run counts once and feeds the rolling average."""
    workflow = workflow_store.add(linear_workflow())

    for _ in range(2):
        anomaly = anomaly_store.add(make_anomaly())
        run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
        await workflow_engine.wait_for_run(run_id, timeout=2)

    stored = workflow_store.workflows[workflow.id]
    assert stored.execution_count == 2
    assert stored.last_executed is not None
    assert stored.average_execution_time_ms is not None
    assert stored.average_execution_time_ms >= 0


@pytest.mark.asyncio
async def test_low_confidence_routes_to_human_gate(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """Below the review threshold the run waits at the human gate."""
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow(human_gate=True))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.RUNNING
    assert summary.awaiting_review is True
    assert summary.current_node == "human_review"
    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.AWAITING_REVIEW
    assert workflow_engine.timers.is_pending(run_id)

    checkpoint = event_sink.checkpoints[run_id]
    assert checkpoint.variables["decision"] == "needs_review"
    assert checkpoint.node_states["human_review"].status == NodeStatus.PENDING
    assert "delivery" not in checkpoint.node_states
    assert actions(event_sink.events)[-1] == AuditAction.REVIEW_REQUESTED


@pytest.mark.asyncio
async def test_human_approval_completes_run(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """An approving reviewer resumes the run along the approved edge."""
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow(human_gate=True))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)

    await workflow_engine.submit_human_decision(run_id, "approved", reviewer="analyst-7", notes="Looks real")
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.COMPLETED
    assert summary.awaiting_review is False
    assert not workflow_engine.timers.is_pending(run_id)
    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.PROCESSED

    reviewed = [e for e in event_sink.events if e.action == AuditAction.REVIEWED]
    assert len(reviewed) == 1
    assert reviewed[0].actor == Actor.HUMAN
    assert reviewed[0].reasoning == "Looks real"
    assert reviewed[0].changes["reviewer"] == "analyst-7"
    assert actions(event_sink.events)[-1] == AuditAction.WORKFLOW_COMPLETED


@pytest.mark.asyncio
async def test_submit_human_decision_errors(workflow_engine, anomaly_store, workflow_store, analyzer):
    """Decisions are rejected for unknown runs, bad values and runs not waiting."""
    with pytest.raises(RunNotFound):
        await workflow_engine.submit_human_decision("run_missing", "approved")

    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow(human_gate=True))
    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)

    with pytest.raises(InvalidHumanDecision):
        await workflow_engine.submit_human_decision(run_id, "rejected")

    await workflow_engine.submit_human_decision(run_id, "approved")
    await workflow_engine.wait_for_run(run_id, timeout=2)

    with pytest.raises(ReviewNotPending):
        await workflow_engine.submit_human_decision(run_id, "approved")


@pytest.mark.asyncio
async def test_review_timeout_applies_default_decision(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """An unanswered review continues with the timeout decision as the system."""
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow(human_gate=True, timeout_seconds=0.05))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await wait_until(
        lambda: AuditAction.WORKFLOW_COMPLETED in actions(event_sink.events)
    )
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.COMPLETED
    reviewed = [e for e in event_sink.events if e.action == AuditAction.REVIEWED]
    assert len(reviewed) == 1
    assert reviewed[0].actor == Actor.SYSTEM
    assert reviewed[0].changes["humanDecision"] == "approved"


@pytest.mark.asyncio
async def test_human_decision_cancels_pending_timeout(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """A reviewer answering first means the timeout never resumes the run."""
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow(human_gate=True, timeout_seconds=0.1))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)
    await workflow_engine.submit_human_decision(run_id, "approved")
    await workflow_engine.wait_for_run(run_id, timeout=2)

    await asyncio.sleep(0.2)

    reviewed = [e for e in event_sink.events if e.action == AuditAction.REVIEWED]
    assert len(reviewed) == 1
    assert reviewed[0].actor == Actor.HUMAN
    assert actions(event_sink.events).count(AuditAction.WORKFLOW_COMPLETED) == 1


@pytest.mark.asyncio
async def test_autonomous_mode_resolves_review_immediately(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """With autonomousMode the gate is resolved without waiting."""
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow(human_gate=True))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id, {"autonomousMode": True})
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.COMPLETED
    assert not workflow_engine.timers.is_pending(run_id)
    reviewed = [e for e in event_sink.events if e.action == AuditAction.REVIEWED]
    assert reviewed[0].actor == Actor.SYSTEM


@pytest.mark.asyncio
async def test_stage_exception_fails_run_and_node(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """A throwing stage fails the run without touching later nodes."""
    analyzer.error = RuntimeError("model exploded")
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow())

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.FAILED
    assert "model exploded" in summary.error

    node_states = event_sink.checkpoints[run_id].node_states
    assert node_states["intake"].status == NodeStatus.COMPLETED
    assert node_states["ai_analysis"].status == NodeStatus.FAILED
    assert "RuntimeError: model exploded" in node_states["ai_analysis"].error
    assert set(node_states) == {"intake", "ai_analysis"}

    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.FAILED
    last = event_sink.events[-1]
    assert last.action == AuditAction.FAILED
    assert last.node_id == "ai_analysis"
    assert "model exploded" in last.reasoning


@pytest.mark.asyncio
async def test_invalid_definition_fails_run_before_any_stage(
    workflow_engine, anomaly_store, workflow_store, event_sink
):
    """Edges to unknown nodes are rejected before traversal starts."""
    workflow = linear_workflow()
    workflow.edges.append(EdgeDefinition(source="decision", target="ghost", condition="needs_review"))
    workflow_store.add(workflow)
    anomaly = anomaly_store.add(make_anomaly())

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.FAILED
    assert "ghost" in summary.error
    assert actions(event_sink.events) == [AuditAction.FAILED]


@pytest.mark.asyncio
async def test_missing_anomaly_fails_run(workflow_engine, workflow_store, event_sink):
    """start_run returns normally; the failure shows up in the run status."""
    workflow = workflow_store.add(linear_workflow())

    run_id = await workflow_engine.start_run(workflow.id, uuid4())
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.FAILED
    assert "not found" in summary.error
    assert event_sink.events == []
    assert event_sink.checkpoints[run_id].status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_reserved_parameters_are_rejected(workflow_engine, anomaly_store, workflow_store):
    """Callers cannot pre-seed stage outputs such as decision."""
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow())

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id, {"decision": "auto_approve"})
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.FAILED
    assert "decision" in summary.error


@pytest.mark.asyncio
async def test_unmatched_decision_stalls_run(workflow_engine, anomaly_store, workflow_store, analyzer):
    """No firing edge after a non-delivery node leaves the run running."""
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow())

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.RUNNING
    assert summary.awaiting_review is False
    assert summary.current_node == "decision"
    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.PROCESSING


@pytest.mark.asyncio
async def test_escalation_raises_severity_and_alerts(
    workflow_engine, anomaly_store, workflow_store, event_sink, notifier, analyzer
):
    """The escalate branch makes the anomaly critical and publishes an alert."""
    analyzer.confidence = 0.88
    anomaly = anomaly_store.add(make_anomaly(), make_signals(True, True))
    workflow = workflow_store.add(default_workflow(auto_approve_threshold=0.95, escalate_threshold=0.85))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.COMPLETED
    assert actions(event_sink.events) == [
        AuditAction.VALIDATED,
        AuditAction.PROCESSED,
        AuditAction.VERIFIED,
        AuditAction.DECIDED,
        AuditAction.ESCALATED,
        AuditAction.APPROVED,
        AuditAction.WORKFLOW_COMPLETED,
    ]
    assert anomaly_store.records[anomaly.id].severity == Severity.CRITICAL

    alerts = notifier.history(ALERTS_CHANNEL)
    assert len(alerts) == 1
    assert alerts[0]["type"] == "high_severity_alert"
    assert alerts[0]["data"]["id"] == str(anomaly.id)


@pytest.mark.asyncio
async def test_escalation_disabled_sends_to_review(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """With escalationEnabled off an escalate decision becomes needs_review."""
    analyzer.confidence = 0.88
    anomaly = anomaly_store.add(make_anomaly(), make_signals(True, True))
    workflow = workflow_store.add(default_workflow(auto_approve_threshold=0.95, escalate_threshold=0.85))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id, {"escalationEnabled": False})
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.awaiting_review is True
    assert event_sink.checkpoints[run_id].variables["decision"] == "needs_review"
    assert AuditAction.ESCALATED not in actions(event_sink.events)


@pytest.mark.asyncio
async def test_reviewer_can_escalate(workflow_engine, anomaly_store, workflow_store, event_sink, analyzer):
    """A reviewer's escalate decision follows the escalation edge."""
    analyzer.confidence = 0.5
    anomaly = anomaly_store.add(make_anomaly(), make_signals(True, False))
    workflow = workflow_store.add(default_workflow())

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)
    await workflow_engine.submit_human_decision(run_id, "escalate")
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.COMPLETED
    assert actions(event_sink.events) == [
        AuditAction.VALIDATED,
        AuditAction.PROCESSED,
        AuditAction.VERIFIED,
        AuditAction.DECIDED,
        AuditAction.REVIEW_REQUESTED,
        AuditAction.REVIEWED,
        AuditAction.ESCALATED,
        AuditAction.APPROVED,
        AuditAction.WORKFLOW_COMPLETED,
    ]


@pytest.mark.asyncio
async def test_insufficient_sources_is_not_an_error(
    workflow_engine, anomaly_store, workflow_store, event_sink
):
    """Too few corroborating signals are recorded with confidence 0.5."""
    anomaly = anomaly_store.add(make_anomaly(), make_signals(True))
    workflow = workflow_store.add(default_workflow(required_sources=2))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.COMPLETED
    verified = next(e for e in event_sink.events if e.action == AuditAction.VERIFIED)
    assert verified.confidence == 0.5
    assert event_sink.checkpoints[run_id].variables["verificationStatus"] == "insufficient_data"
    assert anomaly_store.records[anomaly.id].cross_verification is None


@pytest.mark.asyncio
async def test_verification_stores_aggregate(workflow_engine, anomaly_store, workflow_store):
    """Enough signals produce a consensus on the anomaly."""
    anomaly = anomaly_store.add(make_anomaly(), make_signals(True, True, False, confidence=0.7))
    workflow = workflow_store.add(default_workflow(required_sources=2))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)

    verification = anomaly_store.records[anomaly.id].cross_verification
    assert verification["is_anomaly"] is True
    assert verification["source_count"] == 3
    assert verification["consensus"] == pytest.approx(2 / 3)


@pytest.mark.asyncio
async def test_concurrent_runs_are_independent(
    workflow_engine, anomaly_store, workflow_store, event_sink
):
    """Many runs at once each finish with their own audit trail."""
    workflow = workflow_store.add(linear_workflow())
    anomalies = [anomaly_store.add(make_anomaly()) for _ in range(5)]

    run_ids = [await workflow_engine.start_run(workflow.id, a.id) for a in anomalies]
    summaries = await asyncio.gather(*(workflow_engine.wait_for_run(r, timeout=2) for r in run_ids))

    assert len(set(run_ids)) == 5
    assert all(s.status == RunStatus.COMPLETED for s in summaries)
    assert workflow_store.workflows[workflow.id].execution_count == 5
    for anomaly in anomalies:
        assert len(await event_sink.list_by_anomaly(anomaly.id)) == 4


@pytest.mark.asyncio
async def test_cancel_waiting_run(workflow_engine, anomaly_store, workflow_store, event_sink, analyzer):
    """Cancelling a waiting run fails it and drops its review timer."""
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow(human_gate=True))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)

    assert await workflow_engine.cancel_run(run_id) is True
    summary = await workflow_engine.get_run(run_id)

    assert summary.status == RunStatus.FAILED
    assert summary.error == "cancelled"
    assert not workflow_engine.timers.is_pending(run_id)
    assert event_sink.checkpoints[run_id].node_states["human_review"].status == NodeStatus.FAILED
    assert actions(event_sink.events)[-1] == AuditAction.CANCELLED
    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.FAILED

    assert await workflow_engine.cancel_run(run_id) is False


@pytest.mark.asyncio
async def test_get_run_falls_back_to_checkpoint(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """A fresh engine reports runs it never executed from their checkpoints."""
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow())
    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)

    other = WorkflowEngine(anomaly_store, workflow_store, event_sink, analyzer)
    summary = await other.get_run(run_id)

    assert summary.status == RunStatus.COMPLETED
    assert summary.progress == 1.0

    with pytest.raises(RunNotFound):
        await other.get_run("run_missing")


@pytest.mark.asyncio
async def test_resume_after_restart(workflow_engine, anomaly_store, workflow_store, event_sink, analyzer):
    """A run waiting for review survives an engine restart."""
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow(human_gate=True))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)
    await workflow_engine.shutdown()

    restarted = WorkflowEngine(anomaly_store, workflow_store, event_sink, analyzer)
    try:
        await restarted.resume_run(run_id)
        summary = await restarted.wait_for_run(run_id, timeout=2)
        assert summary.awaiting_review is True
        assert summary.current_node == "human_review"

        await restarted.submit_human_decision(run_id, "approved")
        summary = await restarted.wait_for_run(run_id, timeout=2)
        assert summary.status == RunStatus.COMPLETED

        with pytest.raises(WorkflowError):
            await restarted.resume_run(run_id)
    finally:
        await restarted.shutdown()

    # intake and ai_analysis ran once; the analyzer was not called again
    assert len(analyzer.observations) == 1


@pytest.mark.asyncio
async def test_workflow_notifications(workflow_engine, anomaly_store, workflow_store, notifier):
    """Run start and completion are published on the workflows channel."""
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow())

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)

    statuses = [m["data"]["status"]["status"] for m in notifier.history(WORKFLOWS_CHANNEL)]
    assert statuses == ["running", "completed"]
    assert any(m["type"] == "anomaly_update" for m in notifier.history("anomalies"))


@pytest.mark.asyncio
async def test_initialize_creates_default_workflow(workflow_engine, workflow_store):
    """With no active workflows the default one is created."""
    loaded = await workflow_engine.initialize()

    assert len(loaded) == 1
    assert workflow_engine.default_workflow_id == loaded[0].id
    assert len(loaded[0].nodes) == 8
    assert loaded[0].variables["escalationEnabled"] is True
    assert list(workflow_store.workflows) == [loaded[0].id]


@pytest.mark.asyncio
async def test_initialize_skips_invalid_workflows(workflow_engine, workflow_store):
    """Definitions with cycles are not offered for new runs."""
    broken = linear_workflow()
    broken.nodes.append(NodeDefinition(id="loop", type=NodeType.ESCALATION))
    broken.edges += [
        EdgeDefinition(source="loop", target="ai_analysis"),
        EdgeDefinition(source="ai_analysis", target="loop"),
    ]
    workflow_store.add(broken)
    valid = workflow_store.add(linear_workflow())

    loaded = await workflow_engine.initialize()

    assert [w.id for w in loaded] == [valid.id]
    assert workflow_engine.default_workflow_id == valid.id


@pytest.mark.asyncio
async def test_report_failure_does_not_fail_run(
    anomaly_store, workflow_store, event_sink, notifier
):
    """An unavailable report generator only marks the report as missing."""
    engine = WorkflowEngine(
        anomaly_store,
        workflow_store,
        event_sink,
        StubAnalyzer(confidence=0.85),
        notifier=notifier,
        report_generator=ReportGenerator(AIGateway()),
    )
    anomaly = anomaly_store.add(make_anomaly(), make_signals(True, True))
    workflow = workflow_store.add(default_workflow())

    try:
        run_id = await engine.start_run(workflow.id, anomaly.id)
        summary = await engine.wait_for_run(run_id, timeout=2)
    finally:
        await engine.shutdown()

    assert summary.status == RunStatus.COMPLETED
    assert event_sink.checkpoints[run_id].variables["reportGenerated"] is False
    approved = next(e for e in event_sink.events if e.action == AuditAction.APPROVED)
    assert approved.changes["reportGenerated"] is False


def gate_beside_analysis(timeout_seconds: float) -> WorkflowDefinition:
    """intake fans out to a human gate first and AI analysis second."""
    return WorkflowDefinition(
        name="Gate beside analysis",
        entry_node="intake",
        nodes=[
            NodeDefinition(id="intake", type=NodeType.INTAKE),
            NodeDefinition(
                id="human_review",
                type=NodeType.HUMAN_GATE,
                config={"timeout_seconds": timeout_seconds},
            ),
            NodeDefinition(id="ai_analysis", type=NodeType.AI_ANALYSIS),
            NodeDefinition(
                id="decision",
                type=NodeType.DECISION,
                config={"auto_approve_threshold": 0.8, "escalate_threshold": 0.9},
            ),
            NodeDefinition(id="delivery", type=NodeType.DELIVERY),
        ],
        edges=[
            EdgeDefinition(source="intake", target="human_review"),
            EdgeDefinition(source="intake", target="ai_analysis"),
            EdgeDefinition(source="ai_analysis", target="decision"),
            EdgeDefinition(source="decision", target="delivery", condition="auto_approve"),
            EdgeDefinition(source="human_review", target="delivery", condition="approved"),
        ],
    )


@pytest.mark.asyncio
async def test_review_timeout_waits_for_sibling_branch(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """A gate timing out while a sibling branch runs never overlaps it."""
    analyzer.delay = 0.3
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(gate_beside_analysis(timeout_seconds=0.01))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert analyzer.finished == 1
    assert summary.status == RunStatus.COMPLETED
    assert summary.awaiting_review is False
    assert not workflow_engine.timers.is_pending(run_id)

    # the sibling completed the run; the late timeout changed nothing after it
    trail = actions(event_sink.events)
    assert AuditAction.REVIEWED not in trail
    assert trail.count(AuditAction.WORKFLOW_COMPLETED) == 1
    assert trail[-1] == AuditAction.WORKFLOW_COMPLETED
    assert anomaly_store.patches[-1] == {"status": AnomalyStatus.PROCESSED}
    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.PROCESSED
    assert workflow_store.workflows[workflow.id].execution_count == 1
    assert event_sink.checkpoints[run_id].status == RunStatus.COMPLETED
    assert event_sink.checkpoints[run_id].awaiting_review is None


@pytest.mark.asyncio
async def test_human_decision_waits_for_sibling_branch(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """A decision submitted mid-branch continues the run once the branch ends."""
    analyzer.delay = 0.3
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(gate_beside_analysis(timeout_seconds=3600))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await wait_until(lambda: len(analyzer.observations) == 1)
    await workflow_engine.submit_human_decision(run_id, "approved", reviewer="analyst")
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.COMPLETED
    assert analyzer.finished == 1

    trail = actions(event_sink.events)
    assert trail.index(AuditAction.REVIEWED) > trail.index(AuditAction.DECIDED)
    assert trail[-1] == AuditAction.WORKFLOW_COMPLETED
    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.PROCESSED


@pytest.mark.asyncio
async def test_cancel_covers_queued_continuations(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """Cancelling stops the running branch and the queued review alike."""
    analyzer.delay = 0.3
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(gate_beside_analysis(timeout_seconds=3600))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await wait_until(lambda: len(analyzer.observations) == 1)
    await workflow_engine.submit_human_decision(run_id, "approved")

    assert await workflow_engine.cancel_run(run_id, "operator stop") is True
    summary = await workflow_engine.wait_for_run(run_id, timeout=2)

    assert summary.status == RunStatus.FAILED
    assert analyzer.finished == 0
    trail = actions(event_sink.events)
    assert AuditAction.REVIEWED not in trail
    assert trail[-1] == AuditAction.CANCELLED
    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.FAILED


class FlakyCheckpointSink(FakeEventSink):
    """Sink whose checkpoint writes fail from the given call on."""

    def __init__(self, fail_on: int, recovers: bool):
        super().__init__()
        self.fail_on = fail_on
        self.recovers = recovers
        self.calls = 0

    async def checkpoint(self, state):
        self.calls += 1
        if self.calls == self.fail_on or (self.calls > self.fail_on and not self.recovers):
            raise ConnectionError("checkpoint store unreachable")
        await super().checkpoint(state)


class FlakyAnomalyStore(FakeAnomalyStore):
    """Store whose first update fails."""

    def __init__(self):
        super().__init__()
        self.updates = 0

    async def update(self, anomaly_id, patch):
        self.updates += 1
        if self.updates == 1:
            raise ConnectionError("anomaly store unreachable")
        return await super().update(anomaly_id, patch)


@pytest.mark.asyncio
@pytest.mark.parametrize("recovers", [True, False])
async def test_checkpoint_failure_fails_run(anomaly_store, workflow_store, recovers):
    """A sink error after a stage fails the run and the anomaly."""
    sink = FlakyCheckpointSink(fail_on=2, recovers=recovers)
    engine = WorkflowEngine(anomaly_store, workflow_store, sink, StubAnalyzer())
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow())

    try:
        run_id = await engine.start_run(workflow.id, anomaly.id)
        summary = await engine.wait_for_run(run_id, timeout=2)
    finally:
        await engine.shutdown()

    assert summary.status == RunStatus.FAILED
    assert "ConnectionError" in summary.error
    assert anomaly_store.records[anomaly.id].status == AnomalyStatus.FAILED
    assert sink.events[-1].action == AuditAction.FAILED
    assert sink.events[-1].node_id == "ai_analysis"
    assert AuditAction.DECIDED not in actions(sink.events)
    if recovers:
        checkpoint = sink.checkpoints[run_id]
        assert checkpoint.status == RunStatus.FAILED
        assert checkpoint.node_states["ai_analysis"].status == NodeStatus.FAILED
    else:
        assert sink.checkpoints[run_id].status == RunStatus.RUNNING


@pytest.mark.asyncio
async def test_store_failure_before_first_stage_fails_run(workflow_store, event_sink, analyzer):
    """An anomaly store error while starting the run is recorded as a failure."""
    store = FlakyAnomalyStore()
    engine = WorkflowEngine(store, workflow_store, event_sink, analyzer)
    anomaly = store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow())

    try:
        run_id = await engine.start_run(workflow.id, anomaly.id)
        summary = await engine.wait_for_run(run_id, timeout=2)
    finally:
        await engine.shutdown()

    assert summary.status == RunStatus.FAILED
    assert "anomaly store unreachable" in summary.error
    assert store.records[anomaly.id].status == AnomalyStatus.FAILED
    assert actions(event_sink.events) == [AuditAction.FAILED]
    assert event_sink.checkpoints[run_id].status == RunStatus.FAILED
    assert analyzer.observations == []


@pytest.mark.asyncio
async def test_pending_review_is_checkpointed(
    workflow_engine, anomaly_store, workflow_store, event_sink, analyzer
):
    """A fresh engine reports a run parked at a gate as awaiting review."""
    analyzer.confidence = 0.4
    anomaly = anomaly_store.add(make_anomaly())
    workflow = workflow_store.add(linear_workflow(human_gate=True))

    run_id = await workflow_engine.start_run(workflow.id, anomaly.id)
    await workflow_engine.wait_for_run(run_id, timeout=2)

    assert event_sink.checkpoints[run_id].awaiting_review == "human_review"
    other = WorkflowEngine(anomaly_store, workflow_store, event_sink, analyzer)
    summary = await other.get_run(run_id)
    assert summary.awaiting_review is True
    assert summary.current_node == "human_review"

    await workflow_engine.submit_human_decision(run_id, "approved")
    await workflow_engine.wait_for_run(run_id, timeout=2)

    assert event_sink.checkpoints[run_id].awaiting_review is None
    assert (await other.get_run(run_id)).awaiting_review is False


class StubContentAnalyzer:
    """Content analyzer recording the images it was given."""

    def __init__(self):
        self.images = []

    async def analyze_image(self, image_bytes, filename="upload", mime_type="image/jpeg"):
        self.images.append((image_bytes, mime_type))
        return Judgment(is_anomaly=True, confidence=0.9, provider="vision")


@pytest.mark.asyncio
async def test_verification_counts_attached_images(
    anomaly_store, workflow_store, event_sink, analyzer
):
    """Images on the anomaly are judged and join the signal judgments."""
    content_analyzer = StubContentAnalyzer()
    engine = WorkflowEngine(
        anomaly_store, workflow_store, event_sink, analyzer, content_analyzer=content_analyzer
    )
    image = {"data": base64.b64encode(b"flooded street").decode("ascii"), "mime_type": "image/png"}
    anomaly = anomaly_store.add(
        make_anomaly(modalities={"text": "Water rising on Main St", "images": [image]}),
        make_signals(True, confidence=0.7),
    )
    workflow = workflow_store.add(default_workflow(required_sources=2))

    try:
        run_id = await engine.start_run(workflow.id, anomaly.id)
        await engine.wait_for_run(run_id, timeout=2)
    finally:
        await engine.shutdown()

    assert content_analyzer.images == [(b"flooded street", "image/png")]
    verification = anomaly_store.records[anomaly.id].cross_verification
    assert verification["source_count"] == 2
    assert verification["confidence"] == pytest.approx(0.8)
    assert event_sink.checkpoints[run_id].variables["verificationStatus"] == "verified"
