"""Plan orchestration: create plans and advance them one step per invocation.

``orchestrate_plan`` never loops over steps. It performs at most one step
transition, persists it, and asks the continuation trigger for the next
invocation. Waiting for a human is represented as a ``paused`` plan, not as
suspended control flow.

Concurrent invocations for the same plan are resolved through the store's
revision check: the invocation that claims the step (marks it running) wins,
the others see a StaleWriteError and return without side effects.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Sequence

from conductor.core.bus import Event, PlanContinue
from conductor.core.continuation import ContinuationTrigger
from conductor.planner.approval import ApprovalGate, needs_approval
from conductor.planner.context import build_step_context
from conductor.planner.decomposer import Planner
from conductor.planner.errors import PlanNotFoundError, PlanStateError, StaleWriteError
from conductor.planner.models import (
    PSEUDO_EXIT_CODE,
    Plan,
    PlanStatus,
    PlanStep,
    StepResult,
    StepStatus,
)
from conductor.planner.reporter import Reporter
from conductor.planner.runner import StepRunner
from conductor.planner.store import PlanStore
from conductor.tools.base import ExecutionContext, ToolRegistry
from conductor.utils.logging import bind_plan, get_logger

log = get_logger(__name__)

REJECTED_MESSAGE = "Step rejected by user"


def _failure_message(result: StepResult) -> str:
    return result.error or result.output or "Step failed"


def _replace_step(steps: list[PlanStep], index: int, **changes: Any) -> list[PlanStep]:
    updated = list(steps)
    updated[index] = replace(steps[index], **changes)
    return updated


class Orchestrator:
    def __init__(
        self,
        store: PlanStore,
        planner: Planner,
        registry: ToolRegistry,
        runner: StepRunner,
        gate: ApprovalGate,
        reporter: Reporter,
        continuation: ContinuationTrigger,
        step_cost: float = 0.0004,
    ) -> None:
        self._store = store
        self._planner = planner
        self._registry = registry
        self._runner = runner
        self._gate = gate
        self._reporter = reporter
        self._continuation = continuation
        self._step_cost = step_cost

    # ------------------------------------------------------------------
    # Plan creation
    # ------------------------------------------------------------------

    async def create_and_start_plan(
        self,
        goal: str,
        context: ExecutionContext,
        hints: Sequence[str] | None = None,
        urgency: str = "normal",
    ) -> Plan:
        """Persist, decompose and kick off a plan.

        A planning failure leaves the plan ``failed`` with the error message
        and is re-raised.
        """
        organization_id = context.organization_id or context.user_id
        plan = await self._store.create(
            context.user_id,
            goal,
            {
                "conversation_id": context.conversation_id,
                "organization_id": organization_id,
                "urgency": urgency,
            },
        )

        try:
            catalog = await self._registry.list_available_tools(context.user_id, organization_id)
            decomposition = await self._planner.decompose(goal, hints, catalog.tools)
            await self._store.save_steps(
                plan.id, decomposition.steps, decomposition.estimated_cost
            )
        except Exception as e:
            message = str(e) or "Planning failed"
            log.warning("plan_creation_failed", plan_id=plan.id, error=message)
            await self._store.update_status(plan.id, PlanStatus.FAILED, message)
            failed = await self._store.get_by_id(plan.id)
            if failed is not None:
                await self._reporter.report_plan_failure(failed)
            raise

        log.info("plan_started", plan_id=plan.id, steps=len(decomposition.steps))
        await self._continue(plan.id)
        return await self._load(plan.id)

    # ------------------------------------------------------------------
    # Advancing
    # ------------------------------------------------------------------

    async def orchestrate_plan(self, plan_id: str) -> Plan:
        """Advance the plan by at most one step."""
        plan = await self._load(plan_id)
        if plan.status != PlanStatus.RUNNING:
            log.debug("orchestrate_noop", plan_id=plan_id, status=plan.status.value)
            return plan

        index = plan.current_step_index
        if index > 0 and plan.steps[index - 1].status == StepStatus.FAILED:
            # Failed step recorded without the plan transition; finish it here.
            return await self._fail_after_step(plan, plan.steps[index - 1])

        if index >= len(plan.steps):
            return await self._complete(plan_id)

        step = plan.steps[index]
        if step.status in (StepStatus.RUNNING, StepStatus.AWAITING_APPROVAL):
            # Another invocation is mid-transition on this step.
            log.info("orchestrate_step_in_flight", plan_id=plan_id, step_id=step.id)
            return plan

        if needs_approval(step) and not step.approved and step.status != StepStatus.COMPLETED:
            return await self._pause_for_approval(plan, index)

        return await self._execute_step(plan, index)

    async def on_continue(self, event: Event) -> None:
        """Event bus handler for continuation events."""
        plan_id = event.plan_id if isinstance(event, PlanContinue) else ""
        if not plan_id:
            log.warning("continue_event_without_plan", event_id=event.id)
            return
        with bind_plan(plan_id):
            try:
                await self.orchestrate_plan(plan_id)
            except PlanNotFoundError:
                log.warning("continue_unknown_plan")

    async def _pause_for_approval(self, plan: Plan, index: int) -> Plan:
        step = plan.steps[index]
        updated = _replace_step(plan.steps, index, status=StepStatus.AWAITING_APPROVAL)
        try:
            await self._store.record_step_result(
                plan.id,
                step.id,
                StepResult(output="Awaiting approval", exit_code=PSEUDO_EXIT_CODE),
                updated,
                index,
                0.0,
                expected_revision=plan.revision,
                status=PlanStatus.PAUSED,
            )
        except StaleWriteError:
            return await self._lost_race(plan.id)

        log.info("plan_paused", plan_id=plan.id, step_id=step.id, tool=step.tool)
        await self._gate.request_approval(plan.user_id, plan.id, step)
        return await self._load(plan.id)

    async def _execute_step(self, plan: Plan, index: int) -> Plan:
        step = plan.steps[index]
        try:
            revision = await self._store.update_steps(
                plan.id,
                _replace_step(plan.steps, index, status=StepStatus.RUNNING),
                expected_revision=plan.revision,
            )
        except StaleWriteError:
            return await self._lost_race(plan.id)

        exec_context = self._execution_context(plan)
        skill_map = await self._skill_map(exec_context)
        step_context = build_step_context(plan)
        log.info(
            "plan_step_started",
            plan_id=plan.id,
            step_id=step.id,
            tool=step.tool,
            position=index + 1,
            total=step_context.total_steps,
        )
        result = await self._runner.run_step(
            step, exec_context, step_context.prior_results, skill_map
        )

        finished = _replace_step(
            plan.steps,
            index,
            status=StepStatus.COMPLETED if result.ok else StepStatus.FAILED,
            approved=False,
        )
        next_index = index + 1
        try:
            await self._store.record_step_result(
                plan.id,
                step.id,
                result,
                finished,
                next_index,
                self._step_cost,
                expected_revision=revision,
                status=None if result.ok else PlanStatus.FAILED,
                error_message=None if result.ok else _failure_message(result),
            )
        except StaleWriteError:
            log.warning("plan_step_result_discarded", plan_id=plan.id, step_id=step.id)
            return await self._lost_race(plan.id)

        if not result.ok:
            log.info("plan_failed", plan_id=plan.id, step_id=step.id, tool=step.tool)
            failed = await self._load(plan.id)
            await self._reporter.report_plan_failure(failed)
            return failed

        if next_index >= len(plan.steps):
            return await self._complete(plan.id)

        await self._continue(plan.id)
        return await self._load(plan.id)

    async def _fail_after_step(self, plan: Plan, step: PlanStep) -> Plan:
        result = plan.step_results.get(step.id)
        message = _failure_message(result) if result else f"Step {step.id} failed"
        if await self._store.update_status(plan.id, PlanStatus.FAILED, message):
            failed = await self._load(plan.id)
            await self._reporter.report_plan_failure(failed)
            return failed
        return await self._load(plan.id)

    async def _complete(self, plan_id: str) -> Plan:
        if await self._store.update_status(plan_id, PlanStatus.COMPLETED):
            plan = await self._load(plan_id)
            await self._reporter.report_plan_completion(plan)
            return plan
        return await self._load(plan_id)

    # ------------------------------------------------------------------
    # Human decisions
    # ------------------------------------------------------------------

    async def resume_plan_after_approval(self, plan_id: str) -> Plan:
        plan = await self._load(plan_id)
        if plan.status != PlanStatus.PAUSED:
            raise PlanStateError(f"Plan {plan_id} is not paused")
        index = plan.current_step_index
        step = plan.current_step
        if step is None or step.status != StepStatus.AWAITING_APPROVAL:
            raise PlanStateError(f"No step awaiting approval at index {index}")

        updated = _replace_step(
            plan.steps,
            index,
            status=StepStatus.PENDING,
            requires_approval=False,
            approved=True,
        )
        try:
            await self._store.record_step_result(
                plan_id,
                step.id,
                StepResult(output="Approved by user", exit_code=PSEUDO_EXIT_CODE),
                updated,
                index,
                0.0,
                expected_revision=plan.revision,
                status=PlanStatus.RUNNING,
            )
        except StaleWriteError as e:
            raise PlanStateError(f"Plan {plan_id} was changed by another decision") from e
        log.info("plan_step_approved", plan_id=plan_id, step_id=step.id)

        await self._continue(plan_id)
        return await self._load(plan_id)

    async def reject_plan_step(self, plan_id: str) -> Plan:
        plan = await self._load(plan_id)
        if plan.status != PlanStatus.PAUSED:
            raise PlanStateError(f"Plan {plan_id} is not paused")
        index = plan.current_step_index
        step = plan.current_step
        if step is None:
            raise PlanStateError(f"No step at index {index}")

        updated = [
            replace(s, status=StepStatus.SKIPPED) if i >= index else s
            for i, s in enumerate(plan.steps)
        ]
        try:
            await self._store.record_step_result(
                plan_id,
                step.id,
                StepResult(output="Rejected by user", exit_code=PSEUDO_EXIT_CODE),
                updated,
                len(plan.steps),
                0.0,
                expected_revision=plan.revision,
                status=PlanStatus.CANCELLED,
                error_message=REJECTED_MESSAGE,
            )
        except StaleWriteError as e:
            raise PlanStateError(f"Plan {plan_id} was changed by another decision") from e
        log.info("plan_step_rejected", plan_id=plan_id, step_id=step.id)

        cancelled = await self._load(plan_id)
        await self._reporter.report_plan_cancelled(cancelled)
        return cancelled

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    async def recover_orphan(self, plan: Plan) -> str:
        """Apply the recovery policy to a running plan that stopped moving.

        Returns the action taken: ``retriggered``, ``paused``, ``failed``
        or ``skipped``.
        """
        if plan.status != PlanStatus.RUNNING:
            return "skipped"
        step = plan.current_step

        if step is None or step.status == StepStatus.PENDING:
            # Lost continuation; resuming is idempotent.
            await self._continue(plan.id)
            return "retriggered"

        if step.status == StepStatus.AWAITING_APPROVAL:
            # Step left awaiting approval on a running plan; pause it properly.
            await self._store.update_status(plan.id, PlanStatus.PAUSED)
            await self._gate.request_approval(plan.user_id, plan.id, step)
            return "paused"

        # A step left running may or may not have had its effect; never rerun it.
        message = f"Plan stalled during step {step.id} ({step.tool})"
        if await self._store.update_status(plan.id, PlanStatus.FAILED, message):
            failed = await self._load(plan.id)
            await self._reporter.report_plan_failure(failed)
        return "failed"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, plan_id: str) -> Plan:
        plan = await self._store.get_by_id(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    async def _lost_race(self, plan_id: str) -> Plan:
        log.info("plan_write_lost_race", plan_id=plan_id)
        return await self._load(plan_id)

    async def _continue(self, plan_id: str) -> None:
        try:
            await self._continuation.enqueue(plan_id)
        except Exception:
            # The orphan sweeper is the safety net for a dropped trigger.
            log.exception("continuation_failed", plan_id=plan_id)

    async def _skill_map(self, context: ExecutionContext) -> dict[str, str] | None:
        try:
            catalog = await self._registry.list_available_tools(
                context.user_id, context.organization_id
            )
        except Exception:
            log.warning("skill_map_unavailable", user_id=context.user_id, exc_info=True)
            return None
        return catalog.skill_map or None

    @staticmethod
    def _execution_context(plan: Plan) -> ExecutionContext:
        return ExecutionContext(
            user_id=plan.user_id,
            organization_id=plan.context.get("organization_id") or plan.user_id,
            conversation_id=plan.context.get("conversation_id"),
        )
