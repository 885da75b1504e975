"""Plan meta-tools: delegate a goal to the background agent and check on it."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from conductor.planner.context import build_action_memory
from conductor.planner.models import PlanStatus
from conductor.planner.reporter import generate_plan_summary, plan_list_line
from conductor.planner.store import PlanStore
from conductor.tools.base import BaseTool, ExecutionContext, ToolResult

if TYPE_CHECKING:
    from conductor.planner.orchestrator import Orchestrator

_STATUS_FILTERS = ["running", "paused", "completed", "failed", "cancelled"]


class DelegateToAgentTool(BaseTool):
    def __init__(self, orchestrator: Orchestrator) -> None:
        self._orchestrator = orchestrator

    @property
    def name(self) -> str:
        return "delegate_to_agent"

    @property
    def description(self) -> str:
        return (
            "Delegate a complex, multi-step task to an autonomous background agent. "
            "The agent decomposes the goal into steps, executes them sequentially, "
            "and pauses for approval on sensitive actions such as sending email."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "goal": {
                    "type": "string",
                    "description": "The high-level goal to accomplish.",
                },
                "steps_hint": {
                    "type": "string",
                    "description": "Optional comma-separated hints about what steps to include.",
                },
                "urgency": {
                    "type": "string",
                    "enum": ["low", "normal", "high"],
                    "description": "How urgently the plan should run (default: normal).",
                },
            },
            "required": ["goal"],
        }

    async def execute(self, context: ExecutionContext, **kwargs: Any) -> ToolResult:
        goal = kwargs.get("goal")
        if not goal:
            return ToolResult.err("goal is required")
        raw_hint = kwargs.get("steps_hint") or ""
        hints = [h.strip() for h in raw_hint.split(",") if h.strip()] or None

        try:
            plan = await self._orchestrator.create_and_start_plan(
                goal, context, hints=hints, urgency=kwargs.get("urgency") or "normal",
            )
        except Exception as e:
            return ToolResult.err(f"Could not start plan: {e}")

        return ToolResult.ok(
            f"Plan created (id: {plan.id}). {len(plan.steps)} steps queued. "
            "I'll execute them in the background and notify you when complete "
            "or when approval is needed."
        )


class PlanStatusTool(BaseTool):
    def __init__(self, store: PlanStore, memory_limit: int = 5) -> None:
        self._store = store
        self._memory_limit = memory_limit

    @property
    def name(self) -> str:
        return "get_plan_status"

    @property
    def description(self) -> str:
        return (
            "Check the status of running or completed agent plans, "
            "either one plan by id or the user's recent plans."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "plan_id": {
                    "type": "string",
                    "description": "Specific plan ID to check. If omitted, returns recent plans.",
                },
                "status_filter": {
                    "type": "string",
                    "enum": _STATUS_FILTERS,
                    "description": "Filter plans by status.",
                },
            },
            "required": [],
        }

    async def execute(self, context: ExecutionContext, **kwargs: Any) -> ToolResult:
        plan_id = kwargs.get("plan_id")
        if plan_id:
            plan = await self._store.get_by_id(plan_id)
            if plan is None:
                return ToolResult.ok("Plan not found.")
            return ToolResult.ok(generate_plan_summary(plan))

        status_filter = kwargs.get("status_filter")
        if status_filter and status_filter not in _STATUS_FILTERS:
            return ToolResult.err(f"Unknown status filter: {status_filter}")
        statuses = [PlanStatus(status_filter)] if status_filter else None
        plans = await self._store.list_by_user(context.user_id, statuses=statuses)
        if not plans:
            return ToolResult.ok("No agent plans found.")
        lines = [plan_list_line(p) for p in plans]
        if not status_filter:
            memory = await build_action_memory(
                self._store, context.user_id, limit=self._memory_limit
            )
            if memory:
                lines.extend(["", memory])
        return ToolResult.ok("\n".join(lines))
