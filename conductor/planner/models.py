"""Plan, step and step-result models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class PlanStatus(str, Enum):
    PLANNING = "planning"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    AWAITING_APPROVAL = "awaiting_approval"


TERMINAL_STATUSES = frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED})

# Exit code carried by results that record an approval event rather than a
# tool execution (awaiting approval, approved, rejected).
PSEUDO_EXIT_CODE = -1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PlanStep:
    id: str
    tool: str
    description: str = ""
    args: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    requires_approval: bool = False
    status: StepStatus = StepStatus.PENDING
    # One-time human grant; cleared once the step actually runs.
    approved: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tool": self.tool,
            "description": self.description,
            "args": self.args,
            "depends_on": list(self.depends_on),
            "requires_approval": self.requires_approval,
            "status": self.status.value,
            "approved": self.approved,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanStep:
        return cls(
            id=data["id"],
            tool=data["tool"],
            description=data.get("description", ""),
            args=data.get("args") or {},
            depends_on=list(data.get("depends_on") or []),
            requires_approval=bool(data.get("requires_approval", False)),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            approved=bool(data.get("approved", False)),
        )


@dataclass
class StepResult:
    output: str = ""
    exit_code: int = 0
    timing_ms: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "output": self.output,
            "exit_code": self.exit_code,
            "timing_ms": self.timing_ms,
        }
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepResult:
        return cls(
            output=data.get("output", ""),
            exit_code=int(data.get("exit_code", 0)),
            timing_ms=int(data.get("timing_ms", 0)),
            error=data.get("error"),
        )


@dataclass
class Plan:
    id: str
    user_id: str
    goal: str
    status: PlanStatus = PlanStatus.PLANNING
    steps: list[PlanStep] = field(default_factory=list)
    step_results: dict[str, StepResult] = field(default_factory=dict)
    current_step_index: int = 0
    total_cost: float = 0.0
    estimated_cost: float = 0.0
    context: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    revision: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step(self) -> PlanStep | None:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    def count_steps(self, status: StepStatus) -> int:
        return sum(1 for s in self.steps if s.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "goal": self.goal,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "step_results": {k: v.to_dict() for k, v in self.step_results.items()},
            "current_step_index": self.current_step_index,
            "total_cost": self.total_cost,
            "estimated_cost": self.estimated_cost,
            "context": self.context,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
