"""
SQLAlchemy-backed anomaly and workflow stores.
Each operation runs in its own session so concurrent runs never share one.
"""

import logging
from datetime import datetime
from typing import Any, List
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from anomaly_flow.db.models import Anomaly, SignalData, Workflow
from anomaly_flow.definitions import WorkflowDefinition, WorkflowStatus
from anomaly_flow.repositories.base import AnomalyStore, WorkflowStore, rolling_average
from anomaly_flow.repositories.errors import RecordNotFound
from anomaly_flow.schemas import AnomalyRecord, Judgment

logger = logging.getLogger(__name__)

ANOMALY_JSON_FIELDS = {"location", "modalities", "source_apis", "ai_analysis", "cross_verification"}
WORKFLOW_JSON_FIELDS = {"nodes", "edges", "variables", "tags"}


def _jsonable(value: Any) -> Any:
    """Convert validated pydantic values into plain JSON column content."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    return value


def _check_fields(patch: dict[str, Any], model: type[BaseModel]) -> None:
    unknown = (set(patch) - set(model.model_fields)) | ({"id"} & set(patch))
    if unknown:
        raise ValueError(f"Cannot update fields: {sorted(unknown)}")


class SqlAnomalyStore(AnomalyStore):
    """Anomaly store over the anomalies and signal_data tables."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def _load(self, session: AsyncSession, anomaly_id: UUID) -> Anomaly:
        anomaly = await session.get(Anomaly, anomaly_id)
        if anomaly is None:
            raise RecordNotFound("Anomaly", anomaly_id)
        return anomaly

    async def get(self, anomaly_id: UUID) -> AnomalyRecord:
        async with self.session_maker() as session:
            return AnomalyRecord.model_validate(await self._load(session, anomaly_id))

    async def update(self, anomaly_id: UUID, patch: dict[str, Any]) -> AnomalyRecord:
        _check_fields(patch, AnomalyRecord)

        async with self.session_maker() as session:
            anomaly = await self._load(session, anomaly_id)
            current = AnomalyRecord.model_validate(anomaly).model_dump()
            validated = AnomalyRecord.model_validate({**current, **patch})

            for key in patch:
                value = getattr(validated, key)
                if key in ANOMALY_JSON_FIELDS:
                    value = _jsonable(value)
                setattr(anomaly, key, value)

            await session.commit()
            await session.refresh(anomaly)
            return AnomalyRecord.model_validate(anomaly)

    async def list_signal_judgments(self, anomaly_id: UUID) -> List[Judgment]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(SignalData)
                .where(SignalData.anomaly_id == anomaly_id)
                .order_by(SignalData.collected_at, SignalData.id)
            )
            judgments = []
            for signal in result.scalars().all():
                data = {"provider": signal.source_api, **(signal.judgment or {})}
                judgments.append(Judgment.model_validate(data))
            return judgments


class SqlWorkflowStore(WorkflowStore):
    """Workflow store over the workflows table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def _load(self, session: AsyncSession, workflow_id: UUID) -> Workflow:
        workflow = await session.get(Workflow, workflow_id)
        if workflow is None:
            raise RecordNotFound("Workflow", workflow_id)
        return workflow

    async def get(self, workflow_id: UUID) -> WorkflowDefinition:
        async with self.session_maker() as session:
            return WorkflowDefinition.model_validate(await self._load(session, workflow_id))

    async def list_active(self) -> List[WorkflowDefinition]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Workflow)
                .where(Workflow.status == WorkflowStatus.ACTIVE)
                .order_by(Workflow.created_at, Workflow.name)
            )
            return [WorkflowDefinition.model_validate(row) for row in result.scalars().all()]

    async def create(self, workflow: WorkflowDefinition) -> WorkflowDefinition:
        async with self.session_maker() as session:
            row = Workflow(
                id=workflow.id,
                name=workflow.name,
                description=workflow.description,
                status=workflow.status,
                entry_node=workflow.entry_node,
                nodes=_jsonable(workflow.nodes),
                edges=_jsonable(workflow.edges),
                variables=_jsonable(workflow.variables),
                version=workflow.version,
                tags=list(workflow.tags),
                execution_count=workflow.execution_count,
                last_executed=workflow.last_executed,
                average_execution_time_ms=workflow.average_execution_time_ms,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)

            logger.info(f"Created workflow {row.id} ({row.name})")
            return WorkflowDefinition.model_validate(row)

    async def update(self, workflow_id: UUID, patch: dict[str, Any]) -> WorkflowDefinition:
        _check_fields(patch, WorkflowDefinition)

        async with self.session_maker() as session:
            row = await self._load(session, workflow_id)
            current = WorkflowDefinition.model_validate(row).model_dump()
            validated = WorkflowDefinition.model_validate({**current, **patch})

            for key in patch:
                value = getattr(validated, key)
                if key in WORKFLOW_JSON_FIELDS:
                    value = _jsonable(value)
                setattr(row, key, value)

            await session.commit()
            await session.refresh(row)
            return WorkflowDefinition.model_validate(row)

    async def record_execution(
        self, workflow_id: UUID, duration_ms: float, executed_at: datetime
    ) -> WorkflowDefinition:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Workflow).where(Workflow.id == workflow_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise RecordNotFound("Workflow", workflow_id)

            row.average_execution_time_ms = rolling_average(
                row.average_execution_time_ms, row.execution_count, duration_ms
            )
            row.execution_count += 1
            row.last_executed = executed_at

            await session.commit()
            await session.refresh(row)
            return WorkflowDefinition.model_validate(row)
