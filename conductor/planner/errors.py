"""Plan execution errors."""

from __future__ import annotations


class PlanError(Exception):
    """Base class for plan engine errors."""


class PlanNotFoundError(PlanError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan {plan_id} not found")
        self.plan_id = plan_id


class PlanStateError(PlanError):
    """The requested transition is not valid for the plan's current state."""


class PlanningError(PlanError):
    """The planning model produced output that cannot be turned into steps."""


class StaleWriteError(PlanError):
    """A guarded write lost the race against another writer of the same plan."""

    def __init__(self, plan_id: str, expected_revision: int) -> None:
        super().__init__(
            f"Plan {plan_id} changed since revision {expected_revision}"
        )
        self.plan_id = plan_id
        self.expected_revision = expected_revision
