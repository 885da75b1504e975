"""Cron-driven recovery of running plans that stopped making progress."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from croniter import croniter

from conductor.config import ExecutorConfig
from conductor.planner.store import PlanStore
from conductor.utils.logging import bind_plan, get_logger

if TYPE_CHECKING:
    from conductor.planner.orchestrator import Orchestrator

log = get_logger(__name__)


@dataclass
class SweepReport:
    retriggered: list[str] = field(default_factory=list)
    paused: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.retriggered) + len(self.paused) + len(self.failed)


class OrphanSweeper:
    def __init__(
        self,
        store: PlanStore,
        orchestrator: Orchestrator,
        config: ExecutorConfig,
    ) -> None:
        if not croniter.is_valid(config.sweep_cron):
            raise ValueError(f"Invalid cron expression: {config.sweep_cron}")
        self._store = store
        self._orchestrator = orchestrator
        self._config = config
        self._running = False
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._cron_loop(), name="orphan-sweeper")
        log.info("sweeper_started", cron=self._config.sweep_cron)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        report = SweepReport()
        orphans = await self._store.find_orphaned(
            self._config.orphan_threshold_seconds, now=now
        )
        for plan in orphans:
            with bind_plan(plan.id):
                try:
                    action = await self._orchestrator.recover_orphan(plan)
                except Exception:
                    log.exception("orphan_recovery_failed")
                    continue
                log.info("orphan_recovered", action=action)
            if action == "retriggered":
                report.retriggered.append(plan.id)
            elif action == "paused":
                report.paused.append(plan.id)
            elif action == "failed":
                report.failed.append(plan.id)
        if report.total:
            log.info(
                "sweep_finished",
                retriggered=len(report.retriggered),
                paused=len(report.paused),
                failed=len(report.failed),
            )
        return report

    def next_run(self, after: datetime) -> datetime:
        return croniter(self._config.sweep_cron, after).get_next(datetime)

    async def _cron_loop(self) -> None:
        next_time = self.next_run(datetime.now(timezone.utc))
        while self._running:
            delay = (next_time - datetime.now(timezone.utc)).total_seconds()
            if delay > 0:
                await asyncio.sleep(min(delay, 30))
                continue
            try:
                await self.sweep()
            except Exception:
                log.exception("sweep_loop_error")
            next_time = self.next_run(datetime.now(timezone.utc))
