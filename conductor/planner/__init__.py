"""Autonomous multi-step plan execution."""

from conductor.planner.models import Plan, PlanStatus, PlanStep, StepResult, StepStatus
from conductor.planner.orchestrator import Orchestrator

__all__ = ["Orchestrator", "Plan", "PlanStatus", "PlanStep", "StepResult", "StepStatus"]
