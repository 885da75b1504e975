"""Step execution context and the recent-actions digest."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from conductor.planner.models import Plan, PlanStatus, StepResult, StepStatus, utc_now
from conductor.planner.store import PlanStore

_GOAL_WIDTH = 60
_OUTPUT_WIDTH = 100

_MEMORY_STATUSES = (PlanStatus.COMPLETED, PlanStatus.RUNNING, PlanStatus.PAUSED)


@dataclass
class StepContext:
    plan_goal: str
    current_step_index: int
    total_steps: int
    prior_results: dict[str, StepResult] = field(default_factory=dict)


def build_step_context(plan: Plan) -> StepContext:
    return StepContext(
        plan_goal=plan.goal,
        current_step_index=plan.current_step_index,
        total_steps=len(plan.steps),
        prior_results=dict(plan.step_results),
    )


def _truncate(text: str, width: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


def relative_age(then: datetime, now: datetime | None = None) -> str:
    seconds = int(((now or utc_now()) - then).total_seconds())
    if seconds < 60:
        return "just now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return f"{hours // 24}d ago"


def _detail(plan: Plan) -> str:
    if plan.status == PlanStatus.COMPLETED:
        for step in reversed(plan.steps):
            result = plan.step_results.get(step.id)
            if step.status == StepStatus.COMPLETED and result and result.ok and result.output:
                return f"last output: {_truncate(result.output, _OUTPUT_WIDTH)}"
        return "finished"
    if plan.status == PlanStatus.PAUSED:
        step = plan.current_step
        return f"waiting for approval to run {step.tool}" if step else "waiting for approval"
    total = len(plan.steps)
    return f"on step {min(plan.current_step_index + 1, total)} of {total}"


async def build_action_memory(
    store: PlanStore,
    user_id: str,
    limit: int = 5,
    now: datetime | None = None,
) -> str | None:
    """One line per recent plan, or None when there is nothing worth showing."""
    plans = await store.list_by_user(user_id, statuses=_MEMORY_STATUSES, limit=limit)
    if not plans:
        return None
    lines = ["Recent autonomous actions:"]
    for plan in plans:
        lines.append(
            f"- {relative_age(plan.updated_at, now)}: \"{_truncate(plan.goal, _GOAL_WIDTH)}\" "
            f"[{plan.status.value}] {_detail(plan)}"
        )
    return "\n".join(lines)
