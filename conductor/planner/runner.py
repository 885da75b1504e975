"""Single step execution."""

from __future__ import annotations

import re
import time
from typing import Any, Mapping

from conductor.planner.models import PlanStep, StepResult
from conductor.tools.base import ExecutionContext, ToolRegistry, ToolResult
from conductor.utils.logging import get_logger

log = get_logger(__name__)

_REFERENCE_RE = re.compile(r"\{\{\s*step_(\d+)\.output\s*\}\}")

# Plain-string registry results starting with one of these are failures.
ERROR_PREFIXES = ("Error",)


def resolve_references(value: Any, prior_results: Mapping[str, StepResult]) -> Any:
    """Substitute ``{{step_N.output}}`` in strings, recursing into dicts."""
    if isinstance(value, str):
        def _sub(match: re.Match[str]) -> str:
            number = match.group(1)
            result = prior_results.get(f"step_{number}")
            if result is not None and result.ok:
                return result.output
            return f"[Step {number} output unavailable]"

        return _REFERENCE_RE.sub(_sub, value)
    if isinstance(value, dict):
        return {k: resolve_references(v, prior_results) for k, v in value.items()}
    return value


def _classify(raw: ToolResult | str | Any) -> tuple[bool, str, str | None]:
    if isinstance(raw, ToolResult):
        if raw.success:
            return True, raw.output, None
        message = raw.error or raw.output or "Tool reported failure"
        return False, raw.output or message, message
    text = raw if isinstance(raw, str) else str(raw)
    if text.startswith(ERROR_PREFIXES):
        return False, text, text
    return True, text, None


class StepRunner:
    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    async def run_step(
        self,
        step: PlanStep,
        context: ExecutionContext,
        prior_results: Mapping[str, StepResult],
        skill_map: dict[str, str] | None = None,
    ) -> StepResult:
        """Run one step. Never raises: failures come back as a failed result."""
        args = resolve_references(step.args, prior_results)
        started = time.perf_counter()
        try:
            raw = await self._registry.execute(step.tool, args, context, skill_map)
            ok, output, error = _classify(raw)
        except Exception as e:
            log.warning("step_raised", step_id=step.id, tool=step.tool, exc_info=True)
            ok, output, error = False, "", f"Error executing {step.tool}: {e}"
        timing_ms = int((time.perf_counter() - started) * 1000)

        log.info(
            "step_finished",
            step_id=step.id,
            tool=step.tool,
            ok=ok,
            timing_ms=timing_ms,
        )
        return StepResult(
            output=output,
            exit_code=0 if ok else 1,
            timing_ms=timing_ms,
            error=error,
        )
