"""Human-readable plan summaries and activity entries for terminal states."""

from __future__ import annotations

from conductor.core.activity import ActivitySink
from conductor.planner.models import Plan, StepStatus
from conductor.utils.logging import get_logger, redact

log = get_logger(__name__)

_OUTPUT_WIDTH = 200


def generate_plan_summary(plan: Plan) -> str:
    total = len(plan.steps)
    completed = [s for s in plan.steps if s.status == StepStatus.COMPLETED]
    failed = [s.id for s in plan.steps if s.status == StepStatus.FAILED]
    skipped = [s.id for s in plan.steps if s.status == StepStatus.SKIPPED]

    lines = [
        f"Goal: {plan.goal}",
        f"Status: {plan.status.value} ({len(completed)}/{total} steps completed)",
    ]
    if failed:
        lines.append(f"Failed steps: {', '.join(failed)}")
    if skipped:
        lines.append(f"Skipped steps: {', '.join(skipped)}")
    for step in completed:
        result = plan.step_results.get(step.id)
        output = result.output if result else ""
        if len(output) > _OUTPUT_WIDTH:
            output = output[:_OUTPUT_WIDTH] + "..."
        lines.append(f"- {step.id} ({step.tool}): {output}")
    if plan.total_cost:
        lines.append(f"Cost: ${plan.total_cost:.4f}")
    return "\n".join(lines)


class Reporter:
    """Writes plan outcomes to the activity sink. Sink errors are logged only."""

    def __init__(self, sink: ActivitySink) -> None:
        self._sink = sink

    async def report_plan_completion(self, plan: Plan) -> str:
        summary = generate_plan_summary(plan)
        await self._log(
            plan,
            "agent_plan_completed",
            f"Plan completed: {plan.goal}",
            summary,
            {"steps": len(plan.steps), "total_cost": plan.total_cost},
        )
        return summary

    async def report_plan_failure(self, plan: Plan) -> None:
        reason = redact(plan.error_message or "unknown error")
        failed_step = next((s for s in plan.steps if s.status == StepStatus.FAILED), None)
        if failed_step is not None:
            description = (
                f"Step {failed_step.id} ({failed_step.description or failed_step.tool}) "
                f"failed: {reason}"
            )
        else:
            description = f"Plan failed: {reason}"
        await self._log(
            plan,
            "agent_plan_failed",
            f"Plan failed: {plan.goal}",
            f"{description}\n\n{generate_plan_summary(plan)}",
            {"failed_step": failed_step.id if failed_step else None},
        )

    async def report_plan_cancelled(self, plan: Plan) -> None:
        await self._log(
            plan,
            "agent_plan_cancelled",
            f"Plan cancelled: {plan.goal}",
            generate_plan_summary(plan),
            {"reason": plan.error_message},
        )

    async def _log(
        self,
        plan: Plan,
        event_type: str,
        title: str,
        description: str,
        metadata: dict,
    ) -> None:
        log.info(event_type, plan_id=plan.id, status=plan.status.value)
        try:
            await self._sink.log_activity(
                plan.user_id,
                event_type,
                title,
                description=description,
                metadata={"plan_id": plan.id, **metadata},
            )
        except Exception:
            log.exception("plan_report_failed", plan_id=plan.id, event_type=event_type)


def plan_list_line(plan: Plan) -> str:
    done = plan.count_steps(StepStatus.COMPLETED)
    return f'[{plan.status.value}] "{plan.goal}" ({done}/{len(plan.steps)} steps) - id: {plan.id}'
