"""
Pytest fixtures and configuration for testing.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, List, Optional, Sequence, Union
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from anomaly_flow.agent.graph import WorkflowEngine
from anomaly_flow.ai.providers import LLMProvider
from anomaly_flow.audit.logger import EventSink
from anomaly_flow.db.base import Base
from anomaly_flow.definitions import (
    EdgeDefinition,
    NodeDefinition,
    NodeType,
    WorkflowDefinition,
    WorkflowStatus,
)
from anomaly_flow.notifications import InMemoryNotificationBus
from anomaly_flow.repositories.base import AnomalyStore, WorkflowStore, rolling_average
from anomaly_flow.repositories.errors import RecordNotFound
from anomaly_flow.schemas import (
    AnomalyRecord,
    AuditEventRecord,
    ImageAttachment,
    Judgment,
    Observation,
    RunCheckpoint,
    Severity,
)


# In-memory SQLite shared by every session of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProvider(LLMProvider):
    """
    Provider answering from a script.

    Each entry is returned in turn (the last one repeats); exceptions in
    the script are raised instead of returned.
    """

    def __init__(
        self,
        name: str,
        script: Union[str, Exception, Sequence[Union[str, Exception]]] = "",
        delay: float = 0.0,
    ):
        self.name = name
        self.model = f"{name}-model"
        self.script = list(script) if isinstance(script, (list, tuple)) else [script]
        self.delay = delay
        self.calls = 0
        self.prompts: List[str] = []
        self.closed = False

    async def generate(self, prompt: str, attachments: Sequence[ImageAttachment] = ()) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        answer = self.script[min(self.calls - 1, len(self.script) - 1)]
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def aclose(self) -> None:
        self.closed = True


def judgment_json(is_anomaly: bool = True, confidence: float = 0.85, severity: str = "high") -> str:
    return (
        '{"isAnomaly": %s, "severity": "%s", "confidence": %s, '
        '"description": "scripted answer", "recommendedActions": ["investigate"]}'
        % ("true" if is_anomaly else "false", severity, confidence)
    )


class StubAnalyzer:
    """Signal analyzer returning a fixed judgment, or raising."""

    def __init__(
        self,
        confidence: float = 0.85,
        is_anomaly: bool = True,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.confidence = confidence
        self.is_anomaly = is_anomaly
        self.error = error
        self.delay = delay
        self.observations: List[Observation] = []
        self.finished = 0

    async def analyze(self, observation: Observation) -> Judgment:
        self.observations.append(observation)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.finished += 1
        if self.error is not None:
            raise self.error
        return Judgment(
            is_anomaly=self.is_anomaly,
            severity=Severity.HIGH,
            confidence=self.confidence,
            reasoning="stubbed analysis",
            provider="stub",
        )


class FakeAnomalyStore(AnomalyStore):
    """Dictionary-backed anomaly store."""

    def __init__(self):
        self.records: dict[UUID, AnomalyRecord] = {}
        self.signals: dict[UUID, List[Judgment]] = {}
        self.patches: List[dict[str, Any]] = []

    def add(self, record: AnomalyRecord, signals: Sequence[Judgment] = ()) -> AnomalyRecord:
        self.records[record.id] = record
        self.signals[record.id] = list(signals)
        return record

    async def get(self, anomaly_id: UUID) -> AnomalyRecord:
        if anomaly_id not in self.records:
            raise RecordNotFound("Anomaly", anomaly_id)
        return self.records[anomaly_id].model_copy(deep=True)

    async def update(self, anomaly_id: UUID, patch: dict[str, Any]) -> AnomalyRecord:
        if anomaly_id not in self.records:
            raise RecordNotFound("Anomaly", anomaly_id)
        self.patches.append(dict(patch))
        current = self.records[anomaly_id].model_dump()
        self.records[anomaly_id] = AnomalyRecord.model_validate({**current, **patch})
        return self.records[anomaly_id].model_copy(deep=True)

    async def list_signal_judgments(self, anomaly_id: UUID) -> List[Judgment]:
        return list(self.signals.get(anomaly_id, []))


class FakeWorkflowStore(WorkflowStore):
    """Dictionary-backed workflow store."""

    def __init__(self):
        self.workflows: dict[UUID, WorkflowDefinition] = {}
        self._lock = asyncio.Lock()

    def add(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        self.workflows[workflow.id] = workflow
        return workflow

    async def get(self, workflow_id: UUID) -> WorkflowDefinition:
        if workflow_id not in self.workflows:
            raise RecordNotFound("Workflow", workflow_id)
        return self.workflows[workflow_id].model_copy(deep=True)

    async def list_active(self) -> List[WorkflowDefinition]:
        return [w for w in self.workflows.values() if w.status == WorkflowStatus.ACTIVE]

    async def create(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        return self.add(workflow)

    async def update(self, workflow_id: UUID, patch: dict[str, Any]) -> WorkflowDefinition:
        current = (await self.get(workflow_id)).model_dump()
        self.workflows[workflow_id] = WorkflowDefinition.model_validate({**current, **patch})
        return self.workflows[workflow_id]

    async def record_execution(
        self, workflow_id: UUID, duration_ms: float, executed_at: datetime
    ) -> WorkflowDefinition:
        async with self._lock:
            workflow = await self.get(workflow_id)
            return await self.update(
                workflow_id,
                {
                    "average_execution_time_ms": rolling_average(
                        workflow.average_execution_time_ms, workflow.execution_count, duration_ms
                    ),
                    "execution_count": workflow.execution_count + 1,
                    "last_executed": executed_at,
                },
            )


class FakeEventSink(EventSink):
    """List-backed event sink."""

    def __init__(self):
        self.events: List[AuditEventRecord] = []
        self.checkpoints: dict[str, RunCheckpoint] = {}

    async def append(self, event: AuditEventRecord) -> None:
        self.events.append(event)

    async def list_by_anomaly(self, anomaly_id: UUID) -> List[AuditEventRecord]:
        return [e for e in self.events if e.anomaly_id == anomaly_id]

    async def checkpoint(self, state: RunCheckpoint) -> None:
        self.checkpoints[state.run_id] = state.model_copy(deep=True)

    async def load_checkpoint(self, run_id: str) -> Optional[RunCheckpoint]:
        checkpoint = self.checkpoints.get(run_id)
        return checkpoint.model_copy(deep=True) if checkpoint else None

    async def list_running_checkpoints(self) -> List[RunCheckpoint]:
        return [c for c in self.checkpoints.values() if c.status.value == "running"]


def make_anomaly(**overrides) -> AnomalyRecord:
    """Anomaly with every field intake checks for."""
    data = {
        "id": uuid4(),
        "title": "Unusual Seismic Activity Pattern",
        "description": "Sensors recorded readings far above the seasonal baseline.",
        "severity": Severity.MEDIUM,
        "location": {"lat": 37.77, "lng": -122.42, "address": "San Francisco"},
        "modalities": {"text": "Sudden spike in seismic readings near the bay"},
        "source_apis": ["usgs", "sensor-network"],
        "timestamp": datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return AnomalyRecord(**data)


def make_signals(*flags: bool, confidence: float = 0.8) -> List[Judgment]:
    return [
        Judgment(is_anomaly=flag, confidence=confidence, provider=f"source-{i}")
        for i, flag in enumerate(flags)
    ]


def linear_workflow(
    human_gate: bool = False,
    timeout_seconds: float = 3600.0,
    **decision_config,
) -> WorkflowDefinition:
    """
    intake -> ai_analysis -> decision -> delivery, optionally with a
    human gate on the needs_review branch.
    """
    config = {"auto_approve_threshold": 0.8, "human_review_threshold": 0.6, "escalate_threshold": 0.9}
    config.update(decision_config)

    nodes = [
        NodeDefinition(id="intake", type=NodeType.INTAKE),
        NodeDefinition(id="ai_analysis", type=NodeType.AI_ANALYSIS),
        NodeDefinition(id="decision", type=NodeType.DECISION, config=config),
        NodeDefinition(id="delivery", type=NodeType.DELIVERY),
    ]
    edges = [
        EdgeDefinition(source="intake", target="ai_analysis"),
        EdgeDefinition(source="ai_analysis", target="decision"),
        EdgeDefinition(source="decision", target="delivery", condition="auto_approve"),
    ]
    if human_gate:
        nodes.append(
            NodeDefinition(
                id="human_review",
                type=NodeType.HUMAN_GATE,
                config={"timeout_seconds": timeout_seconds},
            )
        )
        edges += [
            EdgeDefinition(source="decision", target="human_review", condition="needs_review"),
            EdgeDefinition(source="human_review", target="delivery", condition="approved"),
        ]
    return WorkflowDefinition(name="Linear test workflow", entry_node="intake", nodes=nodes, edges=edges)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() holds."""

    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def anomaly_store() -> FakeAnomalyStore:
    return FakeAnomalyStore()


@pytest.fixture
def workflow_store() -> FakeWorkflowStore:
    return FakeWorkflowStore()


@pytest.fixture
def event_sink() -> FakeEventSink:
    return FakeEventSink()


@pytest.fixture
def notifier() -> InMemoryNotificationBus:
    return InMemoryNotificationBus()


@pytest.fixture
def analyzer() -> StubAnalyzer:
    return StubAnalyzer()


@pytest_asyncio.fixture
async def workflow_engine(
    anomaly_store, workflow_store, event_sink, notifier, analyzer
) -> AsyncGenerator[WorkflowEngine, None]:
    """Engine over in-memory fakes, shut down after the test."""
    engine = WorkflowEngine(
        anomalies=anomaly_store,
        workflows=workflow_store,
        sink=event_sink,
        analyzer=analyzer,
        notifier=notifier,
        review_timeout_seconds=3600.0,
        review_timeout_decision="approved",
    )
    yield engine
    await engine.shutdown()


@pytest_asyncio.fixture
async def test_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_maker() as session:
        yield session
