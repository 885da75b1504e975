"""Goal decomposition through the planning model."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from conductor.config import PlannerConfig
from conductor.core.llm import PlanningModel
from conductor.planner.approval import is_sensitive_tool
from conductor.planner.errors import PlanningError
from conductor.planner.models import PlanStep
from conductor.tools.base import ToolDescriptor
from conductor.utils.logging import get_logger

log = get_logger(__name__)

_DECOMPOSE_PROMPT = """\
Break the goal below into at most {max_steps} concrete steps. Each step calls \
exactly one of the available tools. A later step can use an earlier step's \
output by writing {{{{step_N.output}}}} inside an argument value, where N is \
the 1-based position of the earlier step.

Available tools:
{tools}

Goal: {goal}
{hints}
Respond with ONLY a JSON array and no other text:
[{{"tool": "tool_name", "args": {{}}, "description": "what this step does", \
"depends_on": ["step_1"], "requires_approval": false}}]
"""

_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)
_REF_NUMBER_RE = re.compile(r"(\d+)")


@dataclass
class Decomposition:
    steps: list[PlanStep] = field(default_factory=list)
    estimated_cost: float = 0.0


def _describe_tools(tools: Sequence[ToolDescriptor]) -> str:
    if not tools:
        return "- (none)"
    lines = []
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description or 'No description'}")
        if tool.parameters:
            lines.append(f"  parameters: {json.dumps(tool.parameters, sort_keys=True)}")
    return "\n".join(lines)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def extract_json_array(content: str) -> list[Any]:
    """Pull the JSON array out of a reply that may wrap it in prose or fences."""
    match = _ARRAY_RE.search(content)
    if not match:
        raise PlanningError("Planning model reply did not contain a JSON array")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise PlanningError(f"Planning model returned invalid JSON: {e}") from e
    if not isinstance(data, list):
        raise PlanningError("Planning model reply was not a JSON array")
    return data


def canonical_dependencies(raw: Any, position: int) -> list[str]:
    """Rewrite references as ``step_<n>``, keeping only earlier steps."""
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else [raw]
    refs: list[str] = []
    for item in items:
        match = _REF_NUMBER_RE.search(str(item))
        if not match:
            continue
        number = int(match.group(1))
        ref = f"step_{number}"
        if 1 <= number < position and ref not in refs:
            refs.append(ref)
    return refs


class Planner:
    def __init__(self, model: PlanningModel, config: PlannerConfig | None = None) -> None:
        self._model = model
        self._config = config or PlannerConfig()

    @property
    def max_steps(self) -> int:
        return self._config.max_steps

    async def decompose(
        self,
        goal: str,
        hints: Sequence[str] | None,
        available_tools: Sequence[ToolDescriptor | str],
    ) -> Decomposition:
        tools = [
            t if isinstance(t, ToolDescriptor) else ToolDescriptor(name=t)
            for t in available_tools
        ]
        hint_text = ""
        if hints:
            hint_text = "Suggested steps:\n" + "\n".join(f"- {h}" for h in hints) + "\n"
        prompt = _DECOMPOSE_PROMPT.format(
            max_steps=self._config.max_steps,
            tools=_describe_tools(tools),
            goal=goal,
            hints=hint_text,
        )

        completion = await self._model.complete(prompt)
        raw_steps = extract_json_array(completion.content)
        if len(raw_steps) > self._config.max_steps:
            log.warning(
                "plan_steps_truncated",
                proposed=len(raw_steps),
                max_steps=self._config.max_steps,
            )

        known = {t.name for t in tools}
        steps = [
            self._normalize(raw, position, known)
            for position, raw in enumerate(raw_steps[: self._config.max_steps], start=1)
        ]
        if not steps:
            raise PlanningError("Planning model returned no steps")

        estimated = self._config.plan_base_cost + self._config.step_cost_estimate * len(steps)
        log.info("goal_decomposed", steps=len(steps), estimated_cost=estimated)
        return Decomposition(steps=steps, estimated_cost=round(estimated, 6))

    def _normalize(self, raw: Any, position: int, known: set[str]) -> PlanStep:
        if not isinstance(raw, dict):
            raise PlanningError(f"Step {position} is not a JSON object")
        tool = raw.get("tool")
        if not isinstance(tool, str) or not tool.strip():
            raise PlanningError(f"Step {position} has no tool")
        tool = tool.strip()
        if known and tool not in known:
            raise PlanningError(f"Step {position} uses unknown tool '{tool}'")

        args = raw.get("args")
        if args is None:
            args = {}
        elif not isinstance(args, dict):
            raise PlanningError(f"Step {position} args must be an object")

        return PlanStep(
            id=f"step_{position}",
            tool=tool,
            description=str(raw.get("description") or f"Run {tool}"),
            args=args,
            depends_on=canonical_dependencies(raw.get("depends_on"), position),
            # The model may ask for approval but can never waive it.
            requires_approval=_truthy(raw.get("requires_approval")) or is_sensitive_tool(tool),
        )
