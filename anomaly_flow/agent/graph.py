"""
Workflow execution engine.
Walks a workflow graph depth-first for one anomaly per run, dispatching each
node to its stage handler and following the edges whose conditions hold.
Runs execute concurrently as independent tasks; stages within a run are
strictly sequential. A run may own several tasks (its start, a resumed human
gate, a resume after restart) but they take the run's lock one at a time.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Coroutine, Optional
from uuid import UUID, uuid4

from anomaly_flow.agent.errors import (
    InvalidHumanDecision,
    ReviewNotPending,
    RunNotFound,
    StageHandlerError,
    UnknownCondition,
    UnknownNode,
    WorkflowError,
)
from anomaly_flow.agent.nodes import STAGE_HANDLERS, StageOutcome, StageServices
from anomaly_flow.agent.state import ExecutionContext, RunSummary
from anomaly_flow.agent.timers import HumanReviewScheduler
from anomaly_flow.audit.logger import EventSink
from anomaly_flow.config import settings
from anomaly_flow.definitions import (
    EdgeCondition,
    NodeDefinition,
    NodeType,
    WorkflowDefinition,
    default_workflow,
)
from anomaly_flow.guardrails.enforcement import (
    GuardrailViolation,
    filter_valid_workflows,
    validate_run_parameters,
    validate_workflow_definition,
)
from anomaly_flow.integrations.remote_jobs import RemoteJobClient
from anomaly_flow.notifications import (
    InMemoryNotificationBus,
    NotificationBus,
    notify_anomaly_update,
    notify_workflow_update,
)
from anomaly_flow.repositories.base import AnomalyStore, WorkflowStore
from anomaly_flow.repositories.errors import RecordNotFound
from anomaly_flow.schemas import (
    Actor,
    AnomalyStatus,
    AuditAction,
    AuditEventRecord,
    NodeStatus,
    RunStatus,
)
from anomaly_flow.tools.content_analyzer import ContentAnalyzer
from anomaly_flow.tools.report_generator import ReportGenerator
from anomaly_flow.tools.signal_analyzer import SignalAnalyzer

logger = logging.getLogger(__name__)

HUMAN_DECISIONS = {"approved", "escalate"}


def evaluate_condition(condition: Optional[str], variables: dict[str, Any]) -> bool:
    """
    Evaluate a named edge condition against run variables.

    An edge without a condition always fires.

    Raises:
        UnknownCondition: If the name has no predicate
    """
    if condition is None:
        return True

    try:
        name = EdgeCondition(condition)
    except ValueError:
        raise UnknownCondition(condition)

    decision = variables.get("decision")
    human_decision = variables.get("humanDecision")

    if name == EdgeCondition.NEEDS_REVIEW:
        return decision == "needs_review"
    if name == EdgeCondition.AUTO_APPROVE:
        return decision == "auto_approve"
    if name == EdgeCondition.ESCALATE:
        return decision == "escalate" or human_decision == "escalate"
    if name == EdgeCondition.APPROVED:
        return human_decision == "approved"
    raise UnknownCondition(condition)


class WorkflowEngine:
    """
    Drives anomalies through workflow graphs.

    The engine owns every execution context. start_run() never raises for
    problems inside a run; they are observed through get_run() and the
    audit trail.
    """

    def __init__(
        self,
        anomalies: AnomalyStore,
        workflows: WorkflowStore,
        sink: EventSink,
        analyzer: SignalAnalyzer,
        notifier: Optional[NotificationBus] = None,
        report_generator: Optional[ReportGenerator] = None,
        content_analyzer: Optional[ContentAnalyzer] = None,
        remote_jobs: Optional[RemoteJobClient] = None,
        timers: Optional[HumanReviewScheduler] = None,
        review_timeout_seconds: Optional[float] = None,
        review_timeout_decision: Optional[str] = None,
    ):
        self.anomalies = anomalies
        self.workflows = workflows
        self.sink = sink
        self.notifier = notifier or InMemoryNotificationBus()
        self.timers = timers or HumanReviewScheduler()
        self.review_timeout_seconds = (
            settings.human_review_timeout_seconds
            if review_timeout_seconds is None
            else review_timeout_seconds
        )
        self.review_timeout_decision = review_timeout_decision or settings.human_review_timeout_decision
        self.services = StageServices(
            anomalies=anomalies,
            workflows=workflows,
            sink=sink,
            notifier=self.notifier,
            analyzer=analyzer,
            report_generator=report_generator,
            content_analyzer=content_analyzer,
            remote_jobs=remote_jobs,
            run_in_background=self._run_in_background,
        )
        self.default_workflow_id: Optional[UUID] = None

        self._runs: dict[str, ExecutionContext] = {}
        self._tasks: dict[str, set[asyncio.Task]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._background: set[asyncio.Task] = set()

    async def initialize(self) -> list[WorkflowDefinition]:
        """
        Load active workflows, creating the default one when none exist.

        Returns:
            Active workflows that passed validation
        """
        logger.info("Initializing workflow engine")

        workflows = await self.workflows.list_active()
        if not workflows:
            created = await self.workflows.create(
                default_workflow(
                    auto_approve_threshold=settings.auto_approve_threshold,
                    human_review_threshold=settings.human_review_threshold,
                    escalate_threshold=settings.escalate_threshold,
                    required_sources=settings.required_sources,
                    human_review_timeout_seconds=self.review_timeout_seconds,
                    autonomous_mode=settings.autonomous_mode,
                )
            )
            logger.info(f"Created default workflow: {created.id}")
            workflows = [created]

        valid = filter_valid_workflows(workflows)
        self.default_workflow_id = valid[0].id if valid else None

        logger.info(f"Loaded {len(valid)} active workflows")
        return valid

    async def shutdown(self) -> None:
        """Cancel pending review timers, in-flight runs and background jobs."""
        await self.timers.cancel_all()

        tasks = [task for run_tasks in self._tasks.values() for task in run_tasks]
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._locks.clear()
        self._background.clear()
        logger.info("Workflow engine shut down")

    def _spawn(self, context: ExecutionContext, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        run_id = context.run_id
        task = asyncio.create_task(self._serialized(context, coro), name=f"workflow-run:{run_id}")
        self._tasks.setdefault(run_id, set()).add(task)
        task.add_done_callback(partial(self._on_task_done, run_id, coro))
        return task

    async def _serialized(self, context: ExecutionContext, coro: Coroutine[Any, Any, Any]) -> None:
        """
        Run one continuation of a run while holding the run's lock.

        Errors outside the stage handlers (store or sink failures while
        bookkeeping) fail the run like a handler error would.
        """
        lock = self._locks.setdefault(context.run_id, asyncio.Lock())
        async with lock:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Unexpected error in run {context.run_id} at node {context.current_node}: "
                    f"{type(e).__name__}: {e}"
                )
                if context.is_running:
                    await self.handle_failure(
                        context, context.current_node, f"{type(e).__name__}: {e}"
                    )

    def _on_task_done(
        self, run_id: str, coro: Coroutine[Any, Any, Any], task: asyncio.Task
    ) -> None:
        # A task cancelled before it got the lock never started its coroutine
        coro.close()
        tasks = self._tasks.get(run_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._tasks[run_id]
                self._locks.pop(run_id, None)
        if task.cancelled():
            return

        error = task.exception()
        if error is None:
            return

        logger.error(f"Run {run_id} crashed: {type(error).__name__}: {error}", exc_info=error)
        context = self._runs.get(run_id)
        if context is not None and context.is_running:
            context.finish(RunStatus.FAILED, f"{type(error).__name__}: {error}")

    def _run_in_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            logger.error(f"Background task failed: {type(error).__name__}: {error}", exc_info=error)

    def _get_context(self, run_id: str) -> ExecutionContext:
        context = self._runs.get(run_id)
        if context is None:
            raise RunNotFound(run_id)
        return context

    async def start_run(
        self,
        workflow_id: UUID,
        anomaly_id: UUID,
        parameters: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Start executing a workflow for an anomaly.

        Args:
            workflow_id: Workflow to execute
            anomaly_id: Anomaly to process
            parameters: Variables merged over the workflow's defaults

        Returns:
            Run id; the run proceeds in its own task
        """
        run_id = f"run_{uuid4().hex}"
        context = ExecutionContext(run_id=run_id, workflow_id=workflow_id, anomaly_id=anomaly_id)
        self._runs[run_id] = context

        self._spawn(context, self._run(context, dict(parameters or {})))

        logger.info(f"Started workflow run {run_id} for anomaly {anomaly_id}")
        return run_id

    async def wait_for_run(self, run_id: str, timeout: Optional[float] = None) -> RunSummary:
        """
        Wait until the run has no stage work in flight.

        That is when it completed, failed, or is suspended at a human gate.
        """
        context = self._get_context(run_id)

        async def settle() -> None:
            while True:
                tasks = self._tasks.get(run_id)
                if not tasks:
                    return
                await asyncio.wait(set(tasks))

        await asyncio.wait_for(settle(), timeout)
        return context.summary()

    async def get_run(self, run_id: str) -> RunSummary:
        """
        Status of a run, falling back to its last checkpoint.

        Raises:
            RunNotFound: If the run is neither active nor checkpointed
        """
        context = self._runs.get(run_id)
        if context is not None:
            return context.summary()

        checkpoint = await self.sink.load_checkpoint(run_id)
        if checkpoint is None:
            raise RunNotFound(run_id)
        workflow = await self.workflows.get(checkpoint.workflow_id)
        return ExecutionContext.from_checkpoint(checkpoint, workflow).summary()

    async def submit_human_decision(
        self,
        run_id: str,
        decision: str,
        reviewer: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> None:
        """
        Resolve a human gate and continue the run along its outgoing edges.

        Raises:
            RunNotFound: Unknown run
            InvalidHumanDecision: Decision is not approved or escalate
            ReviewNotPending: Run is not waiting at a human gate
        """
        context = self._get_context(run_id)
        if decision not in HUMAN_DECISIONS:
            raise InvalidHumanDecision(decision, HUMAN_DECISIONS)
        if not context.is_running or context.awaiting_review is None:
            raise ReviewNotPending(run_id)

        node_id = context.awaiting_review
        context.awaiting_review = None
        self.timers.cancel(run_id)

        logger.info(f"Human decision '{decision}' received for run {run_id} from {reviewer or 'unknown'}")
        self._spawn(
            context,
            self._resolve_review(context, node_id, decision, Actor.HUMAN, reviewer, notes),
        )

    async def cancel_run(self, run_id: str, reason: str = "cancelled") -> bool:
        """
        Abort a run.

        Returns:
            False if the run had already finished
        """
        context = self._get_context(run_id)
        if not context.is_running:
            return False

        self.timers.cancel(run_id)
        node_id = context.current_node
        context.awaiting_review = None
        context.finish(RunStatus.FAILED, reason)
        if node_id and context.node_states.get(node_id) and (
            context.node_states[node_id].status == NodeStatus.PENDING
        ):
            context.mark_node(node_id, NodeStatus.FAILED, reason)

        current = asyncio.current_task()
        tasks = {task for task in self._tasks.get(run_id, ()) if task is not current}
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

        await self._record_failure(context, node_id, reason, AuditAction.CANCELLED)
        logger.warning(f"Run {run_id} cancelled: {reason}")
        return True

    async def resume_run(self, run_id: str) -> str:
        """
        Rebuild a run from its checkpoint after a restart.

        A completed current node continues along its edges; an interrupted
        one is executed again.

        Raises:
            RunNotFound: No checkpoint for the run
            WorkflowError: Run is still active here or already finished
        """
        active = self._runs.get(run_id)
        if active is not None and active.is_running:
            raise WorkflowError(f"Run {run_id} is already active")

        checkpoint = await self.sink.load_checkpoint(run_id)
        if checkpoint is None:
            raise RunNotFound(run_id)
        if checkpoint.status != RunStatus.RUNNING:
            raise WorkflowError(f"Run {run_id} already finished with status {checkpoint.status.value}")

        workflow = await self.workflows.get(checkpoint.workflow_id)
        context = ExecutionContext.from_checkpoint(checkpoint, workflow)
        self._runs[run_id] = context

        node_id = checkpoint.current_node or workflow.entry_node
        state = context.node_states.get(node_id)
        if state is not None and state.status == NodeStatus.COMPLETED:
            self._spawn(context, self.proceed(context, node_id))
        else:
            # an interrupted human gate asks for review again
            context.awaiting_review = None
            context.node_states.pop(node_id, None)
            self._spawn(context, self.execute_node(context, node_id))

        logger.info(f"Resumed run {run_id} at node {node_id}")
        return run_id

    async def _run(self, context: ExecutionContext, parameters: dict[str, Any]) -> None:
        try:
            validate_run_parameters(parameters)
            workflow = await self.workflows.get(context.workflow_id)
            validate_workflow_definition(workflow)
            await self.anomalies.get(context.anomaly_id)
        except (GuardrailViolation, RecordNotFound) as e:
            message = e.message if isinstance(e, GuardrailViolation) else str(e)
            await self.handle_failure(context, None, message)
            return

        context.workflow = workflow
        context.variables = {**workflow.variables, **parameters}

        await self.anomalies.update(
            context.anomaly_id,
            {"workflow_id": workflow.id, "status": AnomalyStatus.PROCESSING},
        )
        notify_workflow_update(
            self.notifier,
            workflow.id,
            {"status": RunStatus.RUNNING.value, "runId": context.run_id},
        )

        await self.execute_node(context, workflow.entry_node)

    async def execute_node(self, context: ExecutionContext, node_id: str) -> None:
        """
        Execute one node and, on success, the nodes its firing edges lead to.
        """
        if not context.is_running:
            logger.info(f"Run {context.run_id} is {context.status.value}, not executing {node_id}")
            return

        node = context.workflow.get_node(node_id)
        if node is None:
            await self.handle_failure(context, node_id, str(UnknownNode(node_id, context.workflow_id)))
            return

        existing = context.node_states.get(node_id)
        if existing is not None and existing.status == NodeStatus.COMPLETED:
            logger.warning(f"Node {node_id} already completed in run {context.run_id}, skipping")
            return

        context.current_node = node_id
        context.mark_node(node_id, NodeStatus.PENDING)
        logger.info(f"Executing node {node_id} ({node.type.value}) in run {context.run_id}")

        handler = STAGE_HANDLERS[node.type]
        try:
            outcome = await handler(context, node, self.services)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e if isinstance(e, WorkflowError) else StageHandlerError(node_id, e)
            logger.error(f"Error executing node {node_id} in run {context.run_id}: {error}")
            await self.handle_failure(context, node_id, str(error))
            return

        if outcome == StageOutcome.SUSPENDED:
            await self._suspend_for_review(context, node)
            return

        context.mark_node(node_id, NodeStatus.COMPLETED)
        if context.status == RunStatus.COMPLETED and context.awaiting_review is not None:
            logger.warning(
                f"Run {context.run_id} completed while review of {context.awaiting_review} "
                f"was pending, dropping the review"
            )
            context.awaiting_review = None
            self.timers.cancel(context.run_id)
        await self._checkpoint(context)
        await self.proceed(context, node_id)

    async def proceed(self, context: ExecutionContext, node_id: str) -> None:
        """
        Follow the outgoing edges of a completed node in declaration order.

        A non-delivery node with no firing edge leaves the run stalled; the
        run stays running and a warning is logged.
        """
        node = context.workflow.get_node(node_id)
        if node is not None and node.type == NodeType.DELIVERY:
            return

        fired = 0
        for edge in context.workflow.outgoing(node_id):
            if not context.is_running:
                return
            try:
                should_proceed = evaluate_condition(edge.condition, context.variables)
            except UnknownCondition as e:
                await self.handle_failure(context, node_id, str(e))
                return
            if should_proceed:
                fired += 1
                await self.execute_node(context, edge.target)

        if fired == 0 and context.is_running:
            logger.warning(
                f"Run {context.run_id} stalled at node {node_id}: no outgoing edge condition matched "
                f"(decision={context.variables.get('decision')}, "
                f"humanDecision={context.variables.get('humanDecision')})"
            )

    async def handle_failure(
        self, context: ExecutionContext, node_id: Optional[str], message: str
    ) -> None:
        """
        Fail the run: mark the node and run failed, the anomaly failed, and
        record the reason in the audit trail. Nothing is retried.
        """
        if node_id is not None:
            context.mark_node(node_id, NodeStatus.FAILED, message)
        context.awaiting_review = None
        context.finish(RunStatus.FAILED, message)
        self.timers.cancel(context.run_id)

        await self._record_failure(context, node_id, message, AuditAction.FAILED)
        logger.error(f"Run {context.run_id} failed at node {node_id}: {message}")

    async def _record_failure(
        self,
        context: ExecutionContext,
        node_id: Optional[str],
        message: str,
        action: AuditAction,
    ) -> None:
        # each step is attempted even when an earlier one fails
        try:
            await self.anomalies.update(context.anomaly_id, {"status": AnomalyStatus.FAILED})
        except RecordNotFound:
            logger.warning(
                f"Anomaly {context.anomaly_id} not found, "
                f"failure of run {context.run_id} not recorded on it"
            )
            found = False
        except Exception as e:
            logger.error(f"Could not mark anomaly {context.anomaly_id} failed for run {context.run_id}: {e}")
            found = True
        else:
            found = True

        if found:
            try:
                await self.sink.append(
                    AuditEventRecord(
                        anomaly_id=context.anomaly_id,
                        action=action,
                        actor=Actor.SYSTEM,
                        reasoning=message,
                        changes={"status": AnomalyStatus.FAILED.value, "node": node_id},
                        run_id=context.run_id,
                        node_id=node_id,
                    )
                )
            except Exception as e:
                logger.error(f"Could not record {action.value} event for run {context.run_id}: {e}")
            notify_anomaly_update(self.notifier, context.anomaly_id, {"status": AnomalyStatus.FAILED.value})

        try:
            await self._checkpoint(context)
        except Exception as e:
            logger.error(f"Could not checkpoint failed run {context.run_id}: {e}")
        notify_workflow_update(
            self.notifier,
            context.workflow_id,
            {"status": RunStatus.FAILED.value, "runId": context.run_id, "error": message},
        )

    async def _checkpoint(self, context: ExecutionContext) -> None:
        await self.sink.checkpoint(context.to_checkpoint())

    async def _suspend_for_review(self, context: ExecutionContext, node: NodeDefinition) -> None:
        context.awaiting_review = node.id
        await self._checkpoint(context)

        decision = node.config.get("timeout_decision") or self.review_timeout_decision
        if context.variables.get("autonomousMode"):
            logger.info(f"Autonomous mode: resolving review for run {context.run_id} as '{decision}'")
            context.awaiting_review = None
            await self._resolve_review(
                context, node.id, decision, Actor.SYSTEM, None, "Resolved automatically in autonomous mode"
            )
            return

        timeout = node.config.get("timeout_seconds")
        self.timers.schedule(
            context.run_id,
            self.review_timeout_seconds if timeout is None else timeout,
            partial(self._on_review_timeout, context.run_id, decision),
        )

    def _on_review_timeout(self, run_id: str, decision: str) -> None:
        context = self._runs.get(run_id)
        if context is None or not context.is_running or context.awaiting_review is None:
            return

        node_id = context.awaiting_review
        context.awaiting_review = None
        logger.warning(f"Human review timed out for run {run_id}, applying '{decision}'")
        self._spawn(
            context,
            self._resolve_review(context, node_id, decision, Actor.SYSTEM, None, "Human review timed out"),
        )

    async def _resolve_review(
        self,
        context: ExecutionContext,
        node_id: str,
        decision: str,
        actor: Actor,
        reviewer: Optional[str],
        notes: Optional[str],
    ) -> None:
        if not context.is_running:
            logger.info(
                f"Run {context.run_id} is {context.status.value}, "
                f"dropping review decision '{decision}' for {node_id}"
            )
            return

        context.variables["humanDecision"] = decision

        try:
            await self.anomalies.update(context.anomaly_id, {"status": AnomalyStatus.REVIEWED})
            await self.sink.append(
                AuditEventRecord(
                    anomaly_id=context.anomaly_id,
                    action=AuditAction.REVIEWED,
                    actor=actor,
                    reasoning=notes or f"Review decision: {decision}",
                    changes={"humanDecision": decision, "reviewer": reviewer},
                    run_id=context.run_id,
                    node_id=node_id,
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = StageHandlerError(node_id, e)
            logger.error(f"Error recording review for run {context.run_id}: {error}")
            await self.handle_failure(context, node_id, str(error))
            return

        notify_anomaly_update(
            self.notifier,
            context.anomaly_id,
            {"status": AnomalyStatus.REVIEWED.value, "humanDecision": decision},
        )

        context.mark_node(node_id, NodeStatus.COMPLETED)
        await self._checkpoint(context)
        await self.proceed(context, node_id)
