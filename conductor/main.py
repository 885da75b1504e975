"""Conductor entry point: wires the plan engine together and exposes the CLI."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Awaitable, Callable

import click

from conductor import __version__
from conductor.api.server import PlanServer
from conductor.config import Settings, load_settings
from conductor.core.activity import SqliteActivitySink
from conductor.core.bus import EventBus, EventType
from conductor.core.continuation import BusContinuation, ContinuationTrigger, HttpContinuation
from conductor.core.llm import create_model
from conductor.core.sweeper import OrphanSweeper
from conductor.planner.approval import ApprovalGate
from conductor.planner.decomposer import Planner
from conductor.planner.errors import PlanError
from conductor.planner.models import PlanStatus
from conductor.planner.orchestrator import Orchestrator
from conductor.planner.reporter import Reporter, generate_plan_summary, plan_list_line
from conductor.planner.runner import StepRunner
from conductor.planner.store import PlanStore
from conductor.tools.base import ToolRegistry
from conductor.tools.plan_tool import DelegateToAgentTool, PlanStatusTool
from conductor.tools.registry import HttpToolRegistry, LocalToolRegistry
from conductor.utils.logging import get_logger, setup_logging

log = get_logger(__name__)


class Conductor:
    """Main application: owns every long-lived component."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        data_dir = settings.get_data_dir()

        self.bus = EventBus()
        self.store = PlanStore(data_dir / "plans.db")
        self.activity = SqliteActivitySink(data_dir / "activity.db", settings.notifications)
        self.continuation = self._build_continuation()
        self.model = create_model(settings.llm)
        self.registry = self._build_registry()

        self.orchestrator = Orchestrator(
            store=self.store,
            planner=Planner(self.model, settings.planner),
            registry=self.registry,
            runner=StepRunner(self.registry),
            gate=ApprovalGate(self.activity, settings.server.approval_url_template),
            reporter=Reporter(self.activity),
            continuation=self.continuation,
            step_cost=settings.executor.step_cost,
        )
        if isinstance(self.registry, LocalToolRegistry):
            self.registry.register(DelegateToAgentTool(self.orchestrator))
            self.registry.register(
                PlanStatusTool(self.store, settings.executor.action_memory_limit)
            )

        self.server = PlanServer(settings.server, self.bus, self.orchestrator, self.store)
        self.sweeper = OrphanSweeper(self.store, self.orchestrator, settings.executor)
        self._serving = False

    def _build_continuation(self) -> ContinuationTrigger:
        if self.settings.continuation.mode == "http":
            return HttpContinuation(self.settings.continuation)
        return BusContinuation(self.bus)

    def _build_registry(self) -> ToolRegistry:
        if self.settings.registry.url:
            return HttpToolRegistry(self.settings.registry)
        return LocalToolRegistry()

    async def start(self, serve: bool = False) -> None:
        log.info("conductor_starting", version=__version__, serve=serve)
        await self.store.start()
        await self.activity.start()

        self.bus.subscribe(EventType.PLAN_CONTINUE, self.orchestrator.on_continue)
        await self.bus.start()

        if serve:
            await self.server.start()
            if self.settings.executor.sweep_enabled:
                await self.sweeper.start()
            self._serving = True
        log.info("conductor_ready")

    async def drain(self) -> None:
        """Let queued continuations run to their next stopping point."""
        await self.bus.join()

    async def stop(self) -> None:
        log.info("conductor_stopping")
        if self._serving:
            await self.sweeper.stop()
            await self.server.stop()
        await self.bus.stop()
        await self.continuation.close()
        await self.registry.close()
        await self.model.close()
        await self.activity.stop()
        await self.store.stop()
        log.info("conductor_stopped")


async def run(settings: Settings) -> None:
    app = Conductor(settings)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        log.info("shutdown_signal")
        stop_event.set()

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)

    await app.start(serve=True)

    try:
        if sys.platform == "win32":
            while not stop_event.is_set():
                await asyncio.sleep(1)
        else:
            await stop_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


async def _one_shot(settings: Settings, action: Callable[[Conductor], Awaitable[str]]) -> str:
    app = Conductor(settings)
    await app.start()
    try:
        output = await action(app)
        await app.drain()
        return output
    finally:
        await app.stop()


def _run_command(ctx: click.Context, action: Callable[[Conductor], Awaitable[str]]) -> None:
    settings: Settings = ctx.obj["settings"]
    try:
        output = asyncio.run(_one_shot(settings, action))
    except PlanError as e:
        raise click.ClickException(str(e)) from e
    click.echo(output)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML file")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """Conductor, the autonomous plan execution engine."""
    settings = load_settings(config_path)
    if log_level:
        settings.log_level = log_level
    setup_logging(level=settings.log_level, json_output=settings.log_json)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the HTTP API, continuation consumer and orphan sweeper."""
    asyncio.run(run(ctx.obj["settings"]))


@cli.command()
@click.argument("plan_id", required=False)
@click.option("--user", "user_id", default=None, help="List plans for this user")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in PlanStatus]),
    default=None,
    help="Only list plans in this status",
)
@click.pass_context
def status(
    ctx: click.Context, plan_id: str | None, user_id: str | None, status_filter: str | None
) -> None:
    """Show one plan's summary, or list a user's plans."""
    if not plan_id and not user_id:
        raise click.UsageError("Give a PLAN_ID or --user")

    async def action(app: Conductor) -> str:
        if plan_id:
            plan = await app.store.get_by_id(plan_id)
            if plan is None:
                return "Plan not found."
            return generate_plan_summary(plan)
        statuses = [PlanStatus(status_filter)] if status_filter else None
        plans = await app.store.list_by_user(user_id or "", statuses=statuses)
        if not plans:
            return "No agent plans found."
        return "\n".join(plan_list_line(p) for p in plans)

    _run_command(ctx, action)


@cli.command()
@click.argument("plan_id")
@click.pass_context
def approve(ctx: click.Context, plan_id: str) -> None:
    """Approve the paused step of a plan and continue it."""

    async def action(app: Conductor) -> str:
        plan = await app.orchestrator.resume_plan_after_approval(plan_id)
        return f"Approved. Plan {plan.id} is {plan.status.value}."

    _run_command(ctx, action)


@cli.command()
@click.argument("plan_id")
@click.pass_context
def reject(ctx: click.Context, plan_id: str) -> None:
    """Reject the paused step of a plan, cancelling the rest of it."""

    async def action(app: Conductor) -> str:
        plan = await app.orchestrator.reject_plan_step(plan_id)
        return f"Rejected. Plan {plan.id} is {plan.status.value}."

    _run_command(ctx, action)


@cli.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Recover running plans that stopped making progress."""

    async def action(app: Conductor) -> str:
        report = await app.sweeper.sweep()
        return (
            f"Retriggered: {len(report.retriggered)}, "
            f"paused: {len(report.paused)}, failed: {len(report.failed)}"
        )

    _run_command(ctx, action)


if __name__ == "__main__":
    cli()
