"""
Runtime assembly and command-line runner.
Wires settings, database, stores, AI gateway, tools and the workflow engine
together, and exposes a few commands for running workflows locally.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import typer
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from anomaly_flow import __version__
from anomaly_flow.agent.graph import WorkflowEngine
from anomaly_flow.ai.gateway import AIGateway
from anomaly_flow.ai.providers import get_configured_providers
from anomaly_flow.audit.logger import AuditLogger
from anomaly_flow.config import settings
from anomaly_flow.db.session import create_engine, create_session_maker, init_db
from anomaly_flow.demo_data.seed import seed_database
from anomaly_flow.integrations.remote_jobs import RemoteJobClient
from anomaly_flow.logging_config import configure_logging
from anomaly_flow.notifications import InMemoryNotificationBus
from anomaly_flow.repositories.sql import SqlAnomalyStore, SqlWorkflowStore
from anomaly_flow.tools.content_analyzer import ContentAnalyzer
from anomaly_flow.tools.report_generator import ReportGenerator
from anomaly_flow.tools.signal_analyzer import SignalAnalyzer

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Assembled collaborators of one process."""

    db_engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    gateway: AIGateway
    notifier: InMemoryNotificationBus
    remote_jobs: RemoteJobClient
    engine: WorkflowEngine

    async def start(self) -> None:
        """Create the schema, optionally seed, and load workflows."""
        await init_db(self.db_engine)
        if settings.seed_on_startup:
            async with self.session_maker() as session:
                counts = await seed_database(session)
            logger.info(f"Seeded database: {counts}")
        await self.engine.initialize()

    async def close(self) -> None:
        await self.engine.shutdown()
        await self.remote_jobs.aclose()
        await self.gateway.aclose()
        await self.db_engine.dispose()


def build_runtime(database_url: Optional[str] = None) -> Runtime:
    """
    Assemble the runtime from settings.

    Args:
        database_url: Override for settings.database_url

    Returns:
        Runtime ready for start()
    """
    db_engine = create_engine(database_url)
    session_maker = create_session_maker(db_engine)

    gateway = AIGateway(
        timeout_seconds=settings.provider_timeout_seconds,
        failure_threshold=settings.circuit_failure_threshold,
        cooldown_seconds=settings.circuit_cooldown_seconds,
    )
    for provider, per_minute, per_day in get_configured_providers():
        gateway.register_provider(provider, per_minute=per_minute, per_day=per_day)
    logger.info(f"AI providers in priority order: {gateway.provider_names}")

    notifier = InMemoryNotificationBus()
    remote_jobs = RemoteJobClient()

    engine = WorkflowEngine(
        anomalies=SqlAnomalyStore(session_maker),
        workflows=SqlWorkflowStore(session_maker),
        sink=AuditLogger(session_maker),
        analyzer=SignalAnalyzer(gateway),
        notifier=notifier,
        report_generator=ReportGenerator(gateway),
        content_analyzer=ContentAnalyzer(gateway),
        remote_jobs=remote_jobs,
    )

    return Runtime(
        db_engine=db_engine,
        session_maker=session_maker,
        gateway=gateway,
        notifier=notifier,
        remote_jobs=remote_jobs,
        engine=engine,
    )


app = typer.Typer(
    name="anomaly-flow",
    help="Run anomaly decision workflows.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"anomaly-flow version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level."),
) -> None:
    configure_logging(level=log_level)


def _echo_summary(summary) -> None:
    typer.echo(json.dumps(summary.model_dump(mode="json"), indent=2))


async def _with_runtime(action):
    runtime = build_runtime()
    try:
        await runtime.start()
        return await action(runtime)
    finally:
        await runtime.close()


@app.command()
def seed(count: Optional[int] = typer.Option(None, help="Number of anomalies to generate.")) -> None:
    """Create the schema and seed synthetic anomalies."""

    async def action(runtime: Runtime):
        async with runtime.session_maker() as session:
            return await seed_database(session, count=count)

    counts = asyncio.run(_with_runtime(action))
    typer.echo(f"Seeded {counts['anomalies']} anomalies and {counts['signals']} signals")


@app.command()
def run(
    anomaly_id: UUID = typer.Argument(..., help="Anomaly to process."),
    workflow_id: Optional[UUID] = typer.Option(None, help="Workflow to execute (default workflow if omitted)."),
    autonomous: bool = typer.Option(False, "--autonomous", help="Resolve human reviews automatically."),
) -> None:
    """Run a workflow for an anomaly and print the run status."""

    async def action(runtime: Runtime):
        target = workflow_id or runtime.engine.default_workflow_id
        if target is None:
            typer.secho("No valid active workflow", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        parameters = {"autonomousMode": True} if autonomous else {}
        run_id = await runtime.engine.start_run(target, anomaly_id, parameters)
        return await runtime.engine.wait_for_run(run_id)

    _echo_summary(asyncio.run(_with_runtime(action)))


@app.command()
def status(run_id: str = typer.Argument(..., help="Run id.")) -> None:
    """Print the last known status of a run."""

    async def action(runtime: Runtime):
        return await runtime.engine.get_run(run_id)

    _echo_summary(asyncio.run(_with_runtime(action)))


@app.command()
def resume(run_id: str = typer.Argument(..., help="Run id.")) -> None:
    """Resume an interrupted run from its checkpoint."""

    async def action(runtime: Runtime):
        await runtime.engine.resume_run(run_id)
        return await runtime.engine.wait_for_run(run_id)

    _echo_summary(asyncio.run(_with_runtime(action)))


@app.command()
def review(
    run_id: str = typer.Argument(..., help="Run id."),
    decision: str = typer.Argument(..., help="approved or escalate."),
    reviewer: Optional[str] = typer.Option(None, help="Reviewer name."),
    notes: Optional[str] = typer.Option(None, help="Review notes."),
) -> None:
    """Submit a human review decision for a run waiting at a human gate."""

    async def action(runtime: Runtime):
        await runtime.engine.resume_run(run_id)
        await runtime.engine.wait_for_run(run_id)
        await runtime.engine.submit_human_decision(run_id, decision, reviewer=reviewer, notes=notes)
        return await runtime.engine.wait_for_run(run_id)

    _echo_summary(asyncio.run(_with_runtime(action)))


@app.command()
def providers() -> None:
    """Show quota and circuit breaker state of the configured AI providers."""
    gateway = AIGateway()
    for provider, per_minute, per_day in get_configured_providers():
        gateway.register_provider(provider, per_minute=per_minute, per_day=per_day)
    typer.echo(json.dumps(gateway.status(), indent=2))
    asyncio.run(gateway.aclose())


if __name__ == "__main__":
    app()
